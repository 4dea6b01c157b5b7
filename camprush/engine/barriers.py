"""
Barrier classifier

Maps the structured result of an automation step to the one barrier that
blocks automated progress. Pure and deterministic: the same signal always
gives the same answer.
"""
from typing import Iterable

from ..common.models import (
    AssistanceType,
    AutomationResult,
    BarrierType,
    ExecutionSignal,
)

# Highest priority first. A CAPTCHA hides everything behind it.
PRECEDENCE = (
    BarrierType.CAPTCHA,
    BarrierType.LOGIN_REQUIRED,
    BarrierType.PAYMENT_REQUIRED,
    BarrierType.QUEUE,
    BarrierType.UNKNOWN_ERROR,
)

MARKERS = {
    BarrierType.CAPTCHA: {
        "captcha", "recaptcha", "hcaptcha", "turnstile", "cloudflare_challenge",
        "human_verification",
    },
    BarrierType.LOGIN_REQUIRED: {
        "login", "login_form", "sign_in", "signin", "session_expired", "auth_required",
    },
    BarrierType.PAYMENT_REQUIRED: {
        "payment", "payment_form", "card_number", "billing_form", "payment_required",
    },
    BarrierType.QUEUE: {
        "queue", "waiting_room", "queue_it", "virtual_queue", "line_position",
    },
    BarrierType.UNKNOWN_ERROR: {
        "error", "error_message", "server_error", "form_error",
    },
}

URL_FRAGMENTS = {
    BarrierType.CAPTCHA: ("captcha", "/challenge"),
    BarrierType.LOGIN_REQUIRED: ("/login", "/log-in", "/signin", "/sign-in"),
    BarrierType.PAYMENT_REQUIRED: ("/payment", "/billing"),
    BarrierType.QUEUE: ("queue-it", "/queue", "waitingroom", "waiting-room"),
    BarrierType.UNKNOWN_ERROR: ("/error",),
}

TEXT_HINTS = {
    BarrierType.CAPTCHA: (
        "verify you are human", "i'm not a robot", "complete the captcha",
        "confirm you are not a robot",
    ),
    BarrierType.LOGIN_REQUIRED: (
        "please log in", "please sign in", "sign in to continue", "log in to continue",
        "your session has expired",
    ),
    BarrierType.PAYMENT_REQUIRED: (
        "enter your card", "payment information", "payment is required",
        "billing information",
    ),
    BarrierType.QUEUE: (
        "you are now in line", "you are in line", "waiting room",
        "your place in line", "estimated wait time",
    ),
    BarrierType.UNKNOWN_ERROR: (
        "something went wrong", "an error occurred", "internal server error",
    ),
}

HTTP_STATUS = {
    401: BarrierType.LOGIN_REQUIRED,
    402: BarrierType.PAYMENT_REQUIRED,
    429: BarrierType.QUEUE,
}


def _normalize(markers: Iterable[str]) -> set:
    return {m.strip().lower().replace("-", "_").replace(" ", "_") for m in markers if m}


def matched_barriers(signal: ExecutionSignal) -> set:
    """Every barrier type with at least one matching marker"""
    markers = _normalize(signal.markers)
    url = signal.url.lower()
    text = signal.page_text.lower()
    hits = set()

    for barrier in PRECEDENCE:
        if markers & MARKERS[barrier]:
            hits.add(barrier)
        elif any(fragment in url for fragment in URL_FRAGMENTS[barrier]):
            hits.add(barrier)
        elif any(hint in text for hint in TEXT_HINTS[barrier]):
            hits.add(barrier)

    if signal.http_status is not None:
        if signal.http_status in HTTP_STATUS:
            hits.add(HTTP_STATUS[signal.http_status])
        elif signal.http_status >= 500:
            hits.add(BarrierType.UNKNOWN_ERROR)
        elif signal.http_status >= 400 and signal.http_status != 404:
            hits.add(BarrierType.UNKNOWN_ERROR)

    return hits


def classify(signal: ExecutionSignal) -> BarrierType:
    """Classify a signal into exactly one barrier type"""
    hits = matched_barriers(signal)
    for barrier in PRECEDENCE:
        if barrier in hits:
            return barrier
    return BarrierType.NONE


def classify_result(result: AutomationResult) -> BarrierType:
    return classify(result.to_signal())


def assistance_type_for(barrier: BarrierType) -> AssistanceType:
    """Which kind of human help resolves a barrier"""
    return {
        BarrierType.CAPTCHA: AssistanceType.CAPTCHA,
        BarrierType.LOGIN_REQUIRED: AssistanceType.ACCOUNT_CREATION,
        BarrierType.PAYMENT_REQUIRED: AssistanceType.PAYMENT,
    }.get(barrier, AssistanceType.FORM_COMPLETION)


def barrier_for_assistance(assistance_type: AssistanceType) -> BarrierType:
    return {
        AssistanceType.CAPTCHA: BarrierType.CAPTCHA,
        AssistanceType.ACCOUNT_CREATION: BarrierType.LOGIN_REQUIRED,
        AssistanceType.PAYMENT: BarrierType.PAYMENT_REQUIRED,
    }.get(assistance_type, BarrierType.UNKNOWN_ERROR)
