"""
Campaign Service Clients

Channel senders for email and SMS providers.
"""

from .email_sender import EmailSenderClient
from .sms_sender import SMS_ERROR_MESSAGES, SmsSenderClient, describe_sms_status

__all__ = [
    "EmailSenderClient",
    "SmsSenderClient",
    "SMS_ERROR_MESSAGES",
    "describe_sms_status",
]
