"""
notifier.py -- Observability sink for the peg stabilizer.

Every controller event goes to the log.  When Telegram is configured the
event is also sent via the Telegram Bot API:
  - deviation detected on a committing attempt
  - mint/burn executed
  - daily budget window reset
  - cooldown length adjusted
  - emergency halt / resume
  - parameter updates

SETUP:
  1. Message @BotFather on Telegram to create a bot -> get TELEGRAM_BOT_TOKEN
  2. Message @userinfobot to find your TELEGRAM_CHAT_ID
  3. Set both as environment variables

ZERO DEPENDENCIES:
  Uses urllib.request to POST to https://api.telegram.org/bot{token}/sendMessage

Fire-and-forget: nothing here raises.
"""

import json
import logging
import urllib.error
import urllib.request

import config

logger = logging.getLogger(__name__)

# Telegram Bot API base URL template
TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"

PRICE_SCALE = 100_000_000


def _telegram_api(method: str, payload: dict) -> dict:
    """
    Call any Telegram Bot API method.

    Returns the parsed JSON response dict, or {} on failure.
    This function NEVER raises -- failures are logged and swallowed.
    """
    if not config.TELEGRAM_BOT_TOKEN:
        logger.debug("Telegram not configured, skipping %s", method)
        return {}

    url = TELEGRAM_API.format(token=config.TELEGRAM_BOT_TOKEN, method=method)
    data = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "PegStabilizer/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            result = json.loads(resp.read().decode("utf-8"))
            if result.get("ok"):
                return result
            logger.warning("Telegram %s returned ok=false: %s", method, result)
            return {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Telegram %s HTTP %d: %s", method, e.code, body[:200])
        return {}
    except Exception as e:
        logger.warning("Telegram %s failed: %s", method, e)
        return {}


def _send_message(text: str, parse_mode: str = "HTML") -> bool:
    """
    Send a plain message via Telegram Bot API.

    Returns True if sent successfully, False otherwise.
    """
    if not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram chat ID not set, skipping notification")
        return False

    result = _telegram_api("sendMessage", {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": text,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    })
    return bool(result)


def _prefix() -> str:
    """Add [DRY RUN] prefix when in dry-run mode."""
    return "[DRY RUN] " if config.DRY_RUN else ""


def _px(value) -> str:
    try:
        return f"{int(value) / PRICE_SCALE:.8f}"
    except (TypeError, ValueError):
        return "?"


# ---------------------------------------------------------------------------
# Formatters -- one for each event type
# ---------------------------------------------------------------------------

def _fmt_deviation(d: dict) -> str:
    reading = d.get("reading") or {}
    side = "above" if reading.get("direction", 0) > 0 else "below"
    return (
        f"📈 <b>{_prefix()}Peg Deviation: {reading.get('level', '?')}</b>\n\n"
        f"Market: {_px(reading.get('current_price'))}\n"
        f"Target: {_px(reading.get('adjusted_target'))}\n"
        f"Deviation: {reading.get('deviation_bp', '?')} bp {side} target"
    )


def _fmt_action(d: dict) -> str:
    emoji = "🪙" if d.get("action") == "mint" else "🔥"
    return (
        f"{emoji} <b>{_prefix()}Stabilization: {str(d.get('action', '?')).upper()}</b>\n\n"
        f"Amount: {d.get('amount', 0)}\n"
        f"Share of supply: {d.get('amount_bp', 0)} bp"
        f"{' (clamped to daily cap)' if d.get('clamped') else ''}\n"
        f"Daily used: {d.get('daily_used_bp', 0)} bp\n"
        f"Next eligible: {d.get('next_eligible_time', 0)}"
    )


def _fmt_daily_reset(d: dict) -> str:
    return (
        f"📅 <b>{_prefix()}Daily Budget Reset</b>\n\n"
        f"Previous usage: {d.get('previous_used_bp', 0)} bp"
    )


def _fmt_cooldown(d: dict) -> str:
    return (
        f"⏱️ <b>{_prefix()}Cooldown Adjusted</b>\n\n"
        f"{d.get('previous', '?')}s -> {d.get('cooldown', '?')}s ({d.get('level', '?')})"
    )


def _fmt_halt(d: dict) -> str:
    return f"🚨 <b>{_prefix()}Stabilizer HALTED</b>\n\nReason: {d.get('reason', '?')}"


def _fmt_resume(d: dict) -> str:
    return f"▶️ <b>{_prefix()}Stabilizer Resumed</b>\n\nWas halted for: {d.get('previous_reason', '?')}"


def _fmt_params(d: dict) -> str:
    changed = d.get("changed") or {}
    lines = [f"  {k}: {v[0]} -> {v[1]}" for k, v in sorted(changed.items())]
    return f"⚙️ <b>{_prefix()}Parameters Updated</b>\n\n" + ("\n".join(lines) or "no changes")


_FORMATTERS = {
    "deviation_detected": _fmt_deviation,
    "action_executed": _fmt_action,
    "daily_reset": _fmt_daily_reset,
    "cooldown_adjusted": _fmt_cooldown,
    "halt": _fmt_halt,
    "resume": _fmt_resume,
    "parameters_updated": _fmt_params,
}

# Events worth a phone buzz.  The rest only hit the log.
_TELEGRAM_EVENTS = {"action_executed", "halt", "resume", "parameters_updated"}


def notify_event(event_type: str, details: dict) -> None:
    """Sink entry point used by the controller."""
    if event_type in ("halt",):
        logger.warning("event %s %s", event_type, details)
    else:
        logger.info("event %s %s", event_type, details)

    if event_type not in _TELEGRAM_EVENTS:
        return
    formatter = _FORMATTERS.get(event_type)
    text = formatter(details) if formatter else f"<b>{_prefix()}{event_type}</b>\n\n{details}"
    _send_message(text)


def notify_startup(current_price: int, dry_run: bool) -> None:
    mode = "DRY RUN (simulated)" if dry_run else "LIVE"
    text = (
        f"🤖 <b>{_prefix()}Peg Stabilizer Started</b>\n\n"
        f"Mode: {mode}\n"
        f"Market price: {_px(current_price)}\n"
        f"Daily cap: {config.DAILY_CAP_BP} bp\n"
        f"Cooldown: {config.MIN_COOLDOWN_SEC}s .. {config.MAX_COOLDOWN_SEC}s"
    )
    _send_message(text)


def notify_shutdown(reason: str = "Manual") -> None:
    _send_message(f"🛑 <b>{_prefix()}Peg Stabilizer Stopped</b>\n\nReason: {reason}")


def notify_error(error_msg: str) -> None:
    _send_message(f"❌ <b>{_prefix()}Error</b>\n\n<code>{error_msg[:500]}</code>")
