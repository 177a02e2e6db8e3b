"""
config.py -- All tunable parameters for the peg stabilizer keeper.

Every value here is loaded from environment variables so you can configure
the keeper from your deployment dashboard (or a local .env file) without
touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen

Units:
  - prices are fixed-point integers with 8 decimals (1.00 USD = 100_000_000)
  - "bp" values are basis points (1 bp = 0.01%, 10000 bp = 100%)
  - durations are seconds
"""

import os

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


# Fixed-point scale for prices (8 decimals).
PRICE_SCALE: int = 100_000_000

# Basis-point denominator.
BPS: int = 10_000

# ---------------------------------------------------------------------------
# Notifications (NEVER hard-code these -- always use env vars)
# ---------------------------------------------------------------------------

# Telegram bot token (from @BotFather) and your chat ID (from @userinfobot).
# If unset, notifications only go to the log.
TELEGRAM_BOT_TOKEN: str = _env("TELEGRAM_BOT_TOKEN", "")
TELEGRAM_CHAT_ID: str = _env("TELEGRAM_CHAT_ID", "")

# ---------------------------------------------------------------------------
# DRY RUN
# ---------------------------------------------------------------------------

# When True (the default), the keeper runs against in-memory collaborators:
#   - a simulated mean-reverting market feed
#   - an in-memory token ledger
#   - notifications are tagged with [DRY RUN]
DRY_RUN: bool = _env("DRY_RUN", True, bool)

# ---------------------------------------------------------------------------
# Peg target
# ---------------------------------------------------------------------------

# Nominal peg, fixed8.  The effective target is this value scaled by the
# reference asset's own price, so a reference drift moves the target too.
PEG_TARGET_PRICE: int = _env("PEG_TARGET_PRICE", 100_000_000, int)

# ---------------------------------------------------------------------------
# Deviation thresholds (bp, must be strictly increasing)
# ---------------------------------------------------------------------------

# Below SMALL the keeper does nothing.  Raising it: fewer, larger-gap
# interventions.  Lowering it: the keeper reacts to noise.
SMALL_THRESHOLD_BP: int = _env("SMALL_THRESHOLD_BP", 50, int)

# MEDIUM band gets a ramped response (80%..120% of the medium rate).
MEDIUM_THRESHOLD_BP: int = _env("MEDIUM_THRESHOLD_BP", 200, int)

# LARGE band ramps from 100% to 200% of the large rate.
LARGE_THRESHOLD_BP: int = _env("LARGE_THRESHOLD_BP", 500, int)

# At or beyond EXTREME the keeper refuses to act at all.  A 10% depeg is
# more likely a broken feed or a market event that needs a human.
EXTREME_THRESHOLD_BP: int = _env("EXTREME_THRESHOLD_BP", 1000, int)

# ---------------------------------------------------------------------------
# Adjustment rates (bp of total supply per action)
# ---------------------------------------------------------------------------

SMALL_RATE_BP: int = _env("SMALL_RATE_BP", 10, int)
MEDIUM_RATE_BP: int = _env("MEDIUM_RATE_BP", 25, int)
LARGE_RATE_BP: int = _env("LARGE_RATE_BP", 50, int)

# ---------------------------------------------------------------------------
# Cooldown bounds (seconds)
# ---------------------------------------------------------------------------

# Small actions wait MIN, medium the midpoint, large MAX.
# Raising MAX damps oscillation after big moves, at the cost of slower
# follow-up when the first action was not enough.
MIN_COOLDOWN_SEC: int = _env("MIN_COOLDOWN_SEC", 3600, int)
MAX_COOLDOWN_SEC: int = _env("MAX_COOLDOWN_SEC", 21600, int)

# ---------------------------------------------------------------------------
# Daily budget
# ---------------------------------------------------------------------------

# Maximum cumulative adjustment per 24h window, bp of supply.
# Hard ceiling is 1000 bp (10%) no matter what you set here.
DAILY_CAP_BP: int = _env("DAILY_CAP_BP", 200, int)

# Identity that receives mints and funds burns when no treasury is wired.
RESERVE_ADDRESS: str = _env("RESERVE_ADDRESS", "peg-reserve")

# Identity of the optional collateral treasury ("" = no treasury).
TREASURY_ADDRESS: str = _env("TREASURY_ADDRESS", "")

# ---------------------------------------------------------------------------
# Timing / resilience
# ---------------------------------------------------------------------------

# Main loop poll interval in seconds.  Each loop makes one stabilize attempt;
# cooldown rejections are cheap, so polling faster than MIN_COOLDOWN is fine.
POLL_INTERVAL_SECONDS: int = _env("POLL_INTERVAL_SECONDS", 60, int)

# Consecutive unexpected failures (collaborator errors, crashes) before the
# keeper halts the controller and asks for a human.
MAX_CONSECUTIVE_ERRORS: int = _env("MAX_CONSECUTIVE_ERRORS", 5, int)

# ---------------------------------------------------------------------------
# Logging / persistence
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every rejected attempt; INFO is normal.
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Directory for the state snapshot.
LOG_DIR: str = _env("LOG_DIR", "logs")

# Controller snapshot for persistence across restarts.
STATE_FILE: str = _env("STATE_FILE", os.path.join(LOG_DIR, "state.json"))

# ---------------------------------------------------------------------------
# Health-check HTTP server
# ---------------------------------------------------------------------------

# Tiny HTTP server with status JSON and operator actions.  0 disables it.
HEALTH_PORT: int = _env("PORT", _env("HEALTH_PORT", 8080, int), int)

# Shared secret for POST /api/action (X-Operator-Token header).
# Empty means operator actions are open -- only do that on a private network.
OPERATOR_TOKEN: str = _env("OPERATOR_TOKEN", "")

# ---------------------------------------------------------------------------
# Dry-run market simulation
# ---------------------------------------------------------------------------

# Initial supply minted to the reserve in dry-run mode (token base units).
SIM_INITIAL_SUPPLY: int = _env("SIM_INITIAL_SUPPLY", 1_000_000 * 10**18, int)

# Mean-reversion speed and per-step volatility of the simulated market (bp).
SIM_REVERSION: float = _env("SIM_REVERSION", 0.05, float)
SIM_VOLATILITY_BP: float = _env("SIM_VOLATILITY_BP", 30.0, float)

# Seed for the simulated path (reproducible dry runs).
SIM_SEED: int = _env("SIM_SEED", 7, int)


def print_banner():
    """Print a startup summary of the active configuration."""
    lines = [
        "",
        "=" * 60,
        "  PEG STABILIZER KEEPER",
        "=" * 60,
        f"  Mode:            {'DRY RUN' if DRY_RUN else 'LIVE'}",
        f"  Peg target:      {PEG_TARGET_PRICE / PRICE_SCALE:.8f}",
        f"  Thresholds (bp): {SMALL_THRESHOLD_BP}/{MEDIUM_THRESHOLD_BP}/"
        f"{LARGE_THRESHOLD_BP}/{EXTREME_THRESHOLD_BP}",
        f"  Rates (bp):      {SMALL_RATE_BP}/{MEDIUM_RATE_BP}/{LARGE_RATE_BP}",
        f"  Cooldown:        {MIN_COOLDOWN_SEC}s .. {MAX_COOLDOWN_SEC}s",
        f"  Daily cap:       {DAILY_CAP_BP} bp",
        f"  Poll interval:   {POLL_INTERVAL_SECONDS}s",
        f"  Health port:     {HEALTH_PORT}",
        f"  Log level:       {LOG_LEVEL}",
        f"  State file:      {STATE_FILE}",
        f"  Telegram:        {'configured' if TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
