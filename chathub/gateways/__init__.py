from chathub.errors import ChatHubError
from chathub.gateways.base import Contact, CredentialInfo, InboundMessage, PlatformGateway
from chathub.gateways.telegram import TelegramGateway
from chathub.gateways.whatsapp import WhatsAppGateway


class GatewayRegistry:
    """Selects the gateway for an account by its platform name."""

    def __init__(self, gateways: list[PlatformGateway]):
        self._gateways = {g.platform: g for g in gateways}

    def get(self, platform: str) -> PlatformGateway:
        try:
            return self._gateways[platform]
        except KeyError:
            raise ChatHubError(f"Unsupported platform: {platform}") from None

    def for_account(self, account) -> PlatformGateway:
        return self.get(account.platform)


__all__ = [
    "Contact",
    "CredentialInfo",
    "GatewayRegistry",
    "InboundMessage",
    "PlatformGateway",
    "TelegramGateway",
    "WhatsAppGateway",
]
