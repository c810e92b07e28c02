# =============================================================================
# MIME Module
# =============================================================================
# Parsing of raw RFC 822 messages into the fields Mailsync stores. Built on
# the standard library `email` package.
# =============================================================================

from mailsync.mime.parser import MessageParseError, ParsedMessage, parse_message

__all__ = ["MessageParseError", "ParsedMessage", "parse_message"]
