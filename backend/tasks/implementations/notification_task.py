"""Email, SMS and Slack notification steps.

All three share one handler shape and differ only in the channel name
passed to the notifier capability.
"""

from core.constants import StepType
from tasks.base_task import BaseTask, StepContext, TaskResult
from workflow.step_configs import NotificationConfig

DEFAULT_SUBJECT = "Workflow Notification"


class NotificationTask(BaseTask):
    """Send a message to a list of recipients.

    Config:
        recipients: List of addresses/handles (required)
        subject: Optional subject line
        message: Message body (required)
    """

    channel = "email"
    config_model = NotificationConfig

    async def execute(self, ctx: StepContext) -> TaskResult:
        config: NotificationConfig = ctx.config
        notifier = ctx.capabilities.require("notifier")
        subject = config.subject or DEFAULT_SUBJECT

        receipt = await notifier.send(self.channel, list(config.recipients), subject, config.message)

        return TaskResult(
            success=True,
            output={
                "channel": self.channel,
                "recipients": list(config.recipients),
                "subject": subject,
                "message": config.message,
                "receipt": receipt,
            },
            metrics={"notifications_sent": len(config.recipients)},
        )


class EmailNotificationTask(NotificationTask):
    task_type = StepType.EMAIL_NOTIFICATION.value
    display_name = "Email Notification"
    description = "Send an email"
    channel = "email"


class SmsNotificationTask(NotificationTask):
    task_type = StepType.SMS_NOTIFICATION.value
    display_name = "SMS Notification"
    description = "Send a text message"
    channel = "sms"


class SlackNotificationTask(NotificationTask):
    task_type = StepType.SLACK_NOTIFICATION.value
    display_name = "Slack Notification"
    description = "Post a Slack message"
    channel = "slack"


NOTIFICATION_TASK_TYPES = {
    StepType.EMAIL_NOTIFICATION: EmailNotificationTask,
    StepType.SMS_NOTIFICATION: SmsNotificationTask,
    StepType.SLACK_NOTIFICATION: SlackNotificationTask,
}
