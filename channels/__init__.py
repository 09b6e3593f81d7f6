"""
Channel dispatchers.

Each dispatcher wraps one external provider behind ``ChannelDispatcher.deliver``.
"""

from .base import (
    BulkDeliveryOutcome,
    ChannelDispatcher,
    DeliveryItem,
    DeliveryOutcome,
    DispatcherRegistry,
)
from .email import SmtpConfig, SmtpEmailDispatcher
from .in_app import InAppDispatcher
from .push import FcmAPIError, FcmConfig, FcmPushDispatcher
from .sms import TwilioAPIError, TwilioClient, TwilioConfig, TwilioSmsDispatcher


def build_default_registry(
    *,
    smtp: SmtpConfig,
    twilio: TwilioConfig,
    fcm: FcmConfig,
) -> DispatcherRegistry:
    return DispatcherRegistry(
        [
            SmtpEmailDispatcher(smtp),
            TwilioSmsDispatcher(TwilioClient(twilio)),
            FcmPushDispatcher(fcm),
            InAppDispatcher(),
        ]
    )


__all__ = [
    "BulkDeliveryOutcome",
    "ChannelDispatcher",
    "DeliveryItem",
    "DeliveryOutcome",
    "DispatcherRegistry",
    "FcmAPIError",
    "FcmConfig",
    "FcmPushDispatcher",
    "InAppDispatcher",
    "SmtpConfig",
    "SmtpEmailDispatcher",
    "TwilioAPIError",
    "TwilioClient",
    "TwilioConfig",
    "TwilioSmsDispatcher",
    "build_default_registry",
]
