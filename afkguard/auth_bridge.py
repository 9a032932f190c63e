"""
Device-login scraping.

The game client prints its device-authorization prompt as free text on its
console (``"To sign in, use a web browser to open the page
https://www.microsoft.com/link and use the code ABCD1234"``). The
:class:`AuthBridge` is fed those lines one at a time, pulls out the
verification URL and the one-time code, and hands a single
:class:`AuthChallenge` to the operator-notification callback.

The bridge is armed when a connect attempt starts and disarmed on ``login``.
Lines fed while disarmed are ignored.
"""

from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from afkguard.alerts import OperatorRef

logger = logging.getLogger("AfkGuard.AuthBridge")

_CODE = r"([A-Z0-9]{4,12}(?:-[A-Z0-9]{4,12})?)\b"

# Highest priority first. Keywords are case-insensitive, the code itself is not.
CODE_PATTERNS: List[Pattern] = [
    re.compile(r"(?i:enter\s+code)\s*:\s*" + _CODE),
    re.compile(r"(?i:enter\s+the\s+code)\s*:?\s*" + _CODE),
    re.compile(r"(?i:use\s+the\s+code)\s*:?\s*" + _CODE),
    re.compile(r"(?i:code)\s*:\s*" + _CODE),
    re.compile(r"(?i:\bcode)\s+" + _CODE),
]

URL_PATTERNS: List[Pattern] = [
    re.compile(r"https?://(?:www\.)?microsoft\.com/(?:link|devicelogin)[^\s<>\"')\]]*", re.I),
    re.compile(r"https?://[^\s<>\"')\]]+", re.I),
]

_TRAILING_PUNCT = ".,;:!?"


@dataclass(frozen=True)
class AuthChallenge:
    """A pending device-login request for the operator."""

    verification_url: str
    code: str
    recipient: Optional[OperatorRef]
    issued_at: float

    def to_dict(self) -> dict:
        return {
            "verification_url": self.verification_url,
            "code": self.code,
            "recipient": self.recipient.id if self.recipient else None,
            "issued_at": self.issued_at,
        }


def extract_code(line: str) -> Optional[str]:
    """Return the one-time code in *line*, trying patterns in priority order."""
    for pattern in CODE_PATTERNS:
        match = pattern.search(line)
        if match:
            return match.group(1)
    return None


def extract_url(line: str) -> Optional[Tuple[int, str]]:
    """Return ``(priority, url)`` for the first URL pattern that matches."""
    for priority, pattern in enumerate(URL_PATTERNS):
        match = pattern.search(line)
        if match:
            return priority, match.group(0).rstrip(_TRAILING_PUNCT)
    return None


def compose_url(url: str, code: str) -> str:
    """Add ``otc=<code>`` to *url* unless it already carries an ``otc`` parameter."""
    parts = urlsplit(url)
    query = parse_qsl(parts.query, keep_blank_values=True)
    if any(key == "otc" for key, _ in query):
        return url
    query.append(("otc", code))
    return urlunsplit(parts._replace(query=urlencode(query)))


class AuthBridge:
    """Turns scraped console text into at most one live :class:`AuthChallenge`.

    Args:
        on_challenge: Called with every new (or superseding) challenge.
        fallback_url: Used when a code shows up but the client never printed
            a URL. ``None`` holds the code until a URL arrives.
        clock: Timestamp source for ``issued_at``.
    """

    def __init__(
        self,
        on_challenge: Callable[[AuthChallenge], None],
        fallback_url: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._on_challenge = on_challenge
        self._fallback_url = fallback_url
        self._clock = clock
        self._armed = False
        self._recipient: Optional[OperatorRef] = None
        self._code: Optional[str] = None
        self._url: Optional[str] = None
        self._url_priority = len(URL_PATTERNS)
        self._challenge: Optional[AuthChallenge] = None

    @property
    def armed(self) -> bool:
        return self._armed

    @property
    def challenge(self) -> Optional[AuthChallenge]:
        return self._challenge

    @property
    def recipient(self) -> Optional[OperatorRef]:
        return self._recipient

    def arm(self, recipient: Optional[OperatorRef]) -> None:
        """Start watching for a prompt on behalf of *recipient*."""
        self.clear()
        self._recipient = recipient
        self._armed = True
        logger.debug("Auth bridge armed for %s", recipient.label if recipient else "nobody")

    def disarm(self) -> Optional[AuthChallenge]:
        """Stop watching and drop all state. Returns the challenge that was live."""
        previous = self._challenge
        self.clear()
        self._armed = False
        if previous is not None:
            logger.info("Auth challenge %s cleared", previous.code)
        return previous

    def clear(self) -> None:
        self._code = None
        self._url = None
        self._url_priority = len(URL_PATTERNS)
        self._challenge = None

    def feed(self, line: str) -> Optional[AuthChallenge]:
        """Scan one diagnostic line. Returns the challenge if this line produced a new one."""
        if not self._armed or not line:
            return None

        found_url = extract_url(line)
        if found_url is not None and found_url[0] <= self._url_priority:
            self._url_priority, self._url = found_url

        code = extract_code(line)
        if code is not None:
            self._code = code

        if self._code is None:
            return None
        url = self._url or self._fallback_url
        if url is None:
            logger.debug("Holding auth code %s until a URL arrives", self._code)
            return None

        if self._challenge is not None and self._challenge.code == self._code:
            return None

        challenge = AuthChallenge(
            verification_url=compose_url(url, self._code),
            code=self._code,
            recipient=self._recipient,
            issued_at=self._clock(),
        )
        if self._challenge is not None:
            logger.info("Auth code %s superseded by %s", self._challenge.code, challenge.code)
        else:
            logger.info("Auth code found: %s", challenge.code)
        self._challenge = challenge
        try:
            self._on_challenge(challenge)
        except Exception:
            logger.exception("Auth challenge callback error")
        return challenge
