"""DM texts sent by the trial gate. Any key can be overridden via config "messages"."""

from __future__ import annotations

import logging
from typing import Mapping

log = logging.getLogger("rs-trialgate.messages")

MESSAGE_KEYS = ("welcome", "trial_expired", "trial_used", "account_too_new", "purchase_confirmed")

DEFAULT_MESSAGES = {
    "welcome": "\n".join([
        "Hey {mention} — welcome to **{brand}** 🟣",
        "",
        "✅ I just activated your **{trial_hours}-hour trial**. Go check the gated channels now.",
        "",
        "If you want to keep access after the trial ends, I'll send you the instant upgrade link 🔐",
    ]),
    "trial_expired": "\n".join([
        "Hey {mention} — your **free trial just ended** ⏳",
        "",
        "✅ Re-activate access instantly here:",
        "{payment_link}",
        "",
        "Once you checkout, your access is restored automatically.",
    ]),
    "trial_used": "\n".join([
        "Hey {mention} — welcome back 🟣",
        "",
        "Your free trial has already been used on this Discord account.",
        "",
        "✅ Get instant access here:",
        "{payment_link}",
    ]),
    "account_too_new": "\n".join([
        "Hey {mention} — quick security check: your Discord account is too new to receive a free trial.",
        "",
        "✅ You can still get instant access here:",
        "{payment_link}",
    ]),
    "purchase_confirmed": "\n".join([
        "Hey {mention} — thanks for joining **{brand}** 🎉",
        "",
        "✅ Your paid access is active. It stays on for as long as your membership does.",
    ]),
}


class GateMessages:
    def __init__(self, *, brand: str, trial_hours: str, payment_link: str, overrides: Mapping[str, str] = None):
        self.brand = brand
        self.trial_hours = trial_hours
        self.payment_link = payment_link
        self.templates = dict(DEFAULT_MESSAGES)
        for key, text in (overrides or {}).items():
            if key not in DEFAULT_MESSAGES:
                log.warning(f"[Messages] Ignoring unknown message override: {key}")
                continue
            if not str(text).strip():
                continue
            self.templates[key] = str(text)

    @classmethod
    def from_settings(cls, settings) -> "GateMessages":
        return cls(
            brand=settings.brand_name,
            trial_hours=settings.trial_hours_label,
            payment_link=settings.payment_link,
            overrides=settings.messages,
        )

    def render(self, key: str, member_id: int) -> str:
        template = self.templates[key]
        values = {
            "mention": f"<@{member_id}>",
            "brand": self.brand,
            "trial_hours": self.trial_hours,
            "payment_link": self.payment_link,
        }
        try:
            return template.format(**values)
        except (KeyError, IndexError, ValueError) as e:
            log.warning(f"[Messages] Bad placeholder in '{key}' override ({e}); using default text")
            return DEFAULT_MESSAGES[key].format(**values)
