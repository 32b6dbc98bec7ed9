"""
Channel transports.

In-app notifications are delivered by persisting them; email, push and SMS
go through Apprise using one service URL template per channel, with the
recipient's address substituted for ``{target}``.
"""

from typing import Any, Dict, Protocol
from urllib.parse import quote

from apprise import Apprise
from loguru import logger

from clubhub.exceptions import TransportError
from clubhub.notifications.models import Channel
from clubhub.settings.models import NotificationsModel


class ChannelTransport(Protocol):
    def send(self, target: str, title: str, body: str, data: Dict[str, Any]) -> None: ...


class InAppTransport:
    """The stored row is the delivery; the API lists it for the recipient."""

    def send(self, target, title, body, data):
        logger.log("NOTIFY", f"In-app notification '{title}' stored for {target}")


class LogTransport:
    """Fallback for channels without a configured service URL."""

    def __init__(self, channel: Channel):
        self.channel = channel

    def send(self, target, title, body, data):
        logger.log("NOTIFY", f"[{self.channel.value}:dev] To: {target} Subject: {title} Body: {body}")


class AppriseTransport:
    def __init__(self, channel: Channel, url_template: str):
        if "{target}" not in url_template:
            raise ValueError(f"{channel.value} service URL must contain a {{target}} placeholder")
        self.channel = channel
        self.url_template = url_template

    def send(self, target, title, body, data):
        url = self.url_template.format(target=quote(target, safe="@+"))
        ntfy = Apprise()
        if not ntfy.add(url):
            raise TransportError(f"Invalid {self.channel.value} service URL")
        if not ntfy.notify(title=title, body=body):
            raise TransportError(f"{self.channel.value} delivery to {target} failed")
        logger.log("NOTIFY", f"Sent {self.channel.value} notification '{title}' to {target}")


class TransportRegistry:
    def __init__(self, transports: Dict[Channel, ChannelTransport]):
        self.transports = dict(transports)

    def send(self, channel: Channel, target: str, title: str, body: str, data: Dict[str, Any] | None = None) -> None:
        transport = self.transports.get(channel)
        if transport is None:
            raise TransportError(f"No transport configured for channel {channel.value}")
        transport.send(target, title, body, data or {})


def build_transports(settings: NotificationsModel) -> TransportRegistry:
    transports: Dict[Channel, ChannelTransport] = {Channel.InApp: InAppTransport()}
    for channel, url in (
        (Channel.Email, settings.email_url),
        (Channel.Push, settings.push_url),
        (Channel.Sms, settings.sms_url),
    ):
        if url:
            transports[channel] = AppriseTransport(channel, url)
        else:
            logger.debug(f"No service URL for {channel.value}, notifications will only be logged")
            transports[channel] = LogTransport(channel)
    return TransportRegistry(transports)
