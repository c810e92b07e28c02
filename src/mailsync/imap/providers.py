# =============================================================================
# Provider Presets
# =============================================================================
# Known IMAP endpoints, so a config entry can say `provider = "gmx"` instead
# of spelling out host, port and security.
# =============================================================================

from dataclasses import dataclass


@dataclass(frozen=True)
class Provider:
    host: str
    port: int = 993
    security: str = "ssl"


PROVIDERS: dict[str, Provider] = {
    "gmx": Provider(host="imap.gmx.net"),
    "webde": Provider(host="imap.web.de"),
    "gmail": Provider(host="imap.gmail.com"),
}


def get_provider(name: str) -> Provider | None:
    """Look up a preset by name (case-insensitive)."""
    return PROVIDERS.get(name.lower())
