"""
scrapegate/features/antibot/service.py

Anti-bot page classification and the cooldowns it implies.

Classification is substring based on lowercased HTML and fails closed:
a page with no recognised listing markers is BLOCKED / ambiguous_state.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from scrapegate.core.config import settings

logger = logging.getLogger(__name__)


class PageState(str, Enum):
    OK = "OK"
    BLOCKED = "BLOCKED"
    LOGIN = "LOGIN"
    CONSENT = "CONSENT"
    RATE_LIMIT = "RATE_LIMIT"


@dataclass(frozen=True)
class BlockSignal:
    blocked: bool
    provider: Optional[str] = None
    signal: Optional[str] = None


@dataclass(frozen=True)
class PageClassification:
    state: PageState
    reason: Optional[str] = None


_NO_RESULTS_MARKERS = ("no listings match", "no results found")
_BLOCKED_MARKERS = ("access denied", "you have been blocked", "anti-bot")
_LOGIN_MARKERS = ("please login", "please log in", "log in to continue", "sign in to continue")
_CONSENT_MARKERS = ("confirm you are human", "verify you are human", "captcha")
_RATE_LIMIT_MARKERS = ("too many requests", "rate limit", "rate-limited")
_LISTING_MARKERS = ('data-testid="listing-card"', 'data-item-id="', 'data-listing-id="')


def _contains_any(text: str, markers) -> bool:
    return any(marker in text for marker in markers)


def detect_block_signals(html: Optional[str]) -> BlockSignal:
    lower = (html or "").lower()
    if "datadome" in lower:
        return BlockSignal(blocked=True, provider="datadome", signal="datadome.js")
    if "turnstile" in lower or "cf-turnstile" in lower:
        return BlockSignal(blocked=True, provider="turnstile", signal="turnstile")
    return BlockSignal(blocked=False)


def classify_page_state(html: Optional[str]) -> PageClassification:
    text = (html or "").lower()

    if not text.strip():
        return PageClassification(PageState.BLOCKED, "no_results")
    if _contains_any(text, _NO_RESULTS_MARKERS):
        return PageClassification(PageState.BLOCKED, "no_results")

    signal = detect_block_signals(text)
    if signal.blocked:
        return PageClassification(PageState.BLOCKED, signal.provider)

    # Listing markers outrank text markers; provider scripts do not
    if _contains_any(text, _LISTING_MARKERS):
        return PageClassification(PageState.OK)
    if _contains_any(text, _BLOCKED_MARKERS):
        return PageClassification(PageState.BLOCKED, "blocked_html")
    if _contains_any(text, _LOGIN_MARKERS):
        return PageClassification(PageState.LOGIN)
    if _contains_any(text, _CONSENT_MARKERS):
        return PageClassification(PageState.CONSENT)
    if _contains_any(text, _RATE_LIMIT_MARKERS):
        return PageClassification(PageState.RATE_LIMIT)

    return PageClassification(PageState.BLOCKED, "ambiguous_state")


def retry_delay_seconds(attempt: int, base: Optional[float] = None, maximum: Optional[float] = None) -> float:
    """Exponential backoff: base * 2^(attempt - 1), capped at ``maximum``."""
    base = settings.ANTIBOT_RETRY_BASE_SECONDS if base is None else base
    maximum = settings.ANTIBOT_RETRY_MAX_SECONDS if maximum is None else maximum
    return min(maximum, base * (2 ** max(0, attempt - 1)))


def cooldown_for_page_state(classification: PageClassification, now: datetime, attempt: int = 1) -> Optional[datetime]:
    """
    Cooldown deadline implied by a classified page, or None.

    - OK and empty result pages: no cooldown
    - RATE_LIMIT: exponential retry delay for the attempt
    - BLOCKED, LOGIN, CONSENT: the fixed block cooldown
    """
    state = classification.state
    if state is PageState.OK:
        return None
    if state is PageState.BLOCKED and classification.reason == "no_results":
        return None
    if state is PageState.RATE_LIMIT:
        return now + timedelta(seconds=retry_delay_seconds(attempt))
    return now + timedelta(minutes=settings.ANTIBOT_BLOCK_COOLDOWN_MINUTES)
