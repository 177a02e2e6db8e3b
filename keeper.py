"""
Peg stabilizer keeper runtime.

The external trigger around the controller:
- one stabilize attempt per poll interval
- error handling by kind (retry later / needs intervention / fatal)
- auto-halt after repeated unexpected failures
- JSON snapshot persistence across restarts
- status JSON + operator actions over HTTP
"""

from __future__ import annotations

import hmac
import json
import logging
import os
import signal
import threading
import time
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn
from typing import Any

import config
import notifier
import parameters as pm
from backtest import SimulatedMarketOracle
from collaborators import InMemoryTokenLedger, InMemoryTreasury, StaticReferenceOracle
from controller import ActionOutcome, PegController
from errors import (
    FATAL,
    RETRY_LATER,
    ControllerError,
    InCooldownError,
    ParameterValidationError,
    StalePriceError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)

_RUNTIME: "KeeperRuntime | None" = None


def setup_logging() -> None:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )


def _now() -> int:
    return int(time.time())


def build_dry_run_controller() -> tuple[PegController, SimulatedMarketOracle]:
    market = SimulatedMarketOracle(
        peg=config.PEG_TARGET_PRICE,
        reversion=config.SIM_REVERSION,
        volatility_bp=config.SIM_VOLATILITY_BP,
        seed=config.SIM_SEED,
    )
    treasury = None
    if config.TREASURY_ADDRESS:
        treasury = InMemoryTreasury(address=config.TREASURY_ADDRESS, collateral=config.SIM_INITIAL_SUPPLY // 10)
        ledger = InMemoryTokenLedger({config.TREASURY_ADDRESS: config.SIM_INITIAL_SUPPLY})
    else:
        ledger = InMemoryTokenLedger({config.RESERVE_ADDRESS: config.SIM_INITIAL_SUPPLY})

    controller = PegController(
        market,
        StaticReferenceOracle(),
        ledger,
        params=pm.from_config(),
        treasury=treasury,
        reserve_address=config.RESERVE_ADDRESS,
    )
    return controller, market


class KeeperRuntime:
    def __init__(
        self,
        controller: PegController,
        *,
        state_file: str | None = None,
        market_sim: SimulatedMarketOracle | None = None,
    ) -> None:
        self.lock = threading.RLock()
        self.controller = controller
        self.market_sim = market_sim
        self.state_file = config.STATE_FILE if state_file is None else state_file
        self.started_at = _now()
        self.running = True

        self.loops = 0
        self.consecutive_errors = 0
        self.last_outcome: dict | None = None
        self.last_error: dict | None = None
        self._last_alerted_error = ""

    # ------------------ Persistence ------------------

    def _save_snapshot(self) -> None:
        if not self.state_file:
            return
        snap = self.controller.snapshot()
        snap["keeper"] = {"loops": self.loops, "consecutive_errors": self.consecutive_errors}
        directory = os.path.dirname(self.state_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self.state_file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(snap, f, indent=2, sort_keys=True)
        os.replace(tmp, self.state_file)

    def _load_snapshot(self) -> bool:
        if not self.state_file or not os.path.exists(self.state_file):
            return False
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                snap = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("Could not read snapshot %s: %s", self.state_file, e)
            return False
        try:
            self.controller.restore(snap)
        except ParameterValidationError as e:
            logger.warning("Snapshot parameters rejected, keeping configured set: %s", e)
            return False
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning("Snapshot %s is malformed, starting fresh: %s", self.state_file, e)
            return False
        keeper = snap.get("keeper") or {}
        try:
            self.loops = int(keeper.get("loops", 0))
        except (ValueError, TypeError):
            self.loops = 0
        return True

    # ------------------ Lifecycle ------------------

    def initialize(self) -> None:
        restored = self._load_snapshot()
        logger.info("Keeper initialized (%s)", "snapshot restored" if restored else "fresh state")
        price = 0
        try:
            price = self.controller.preview_deviation().current_price
        except Exception as e:
            logger.warning("Initial price read failed: %s", e)
        notifier.notify_startup(price, config.DRY_RUN)

    def shutdown(self, reason: str) -> None:
        with self.lock:
            if not self.running:
                return
            self.running = False
            self._save_snapshot()
        logger.info("Keeper stopped: %s", reason)
        notifier.notify_shutdown(reason)

    # ------------------ Loop ------------------

    def run_loop_once(self, now: int | None = None) -> None:
        now = _now() if now is None else int(now)
        with self.lock:
            self.loops += 1
            if self.market_sim is not None:
                self.market_sim.advance()
            try:
                outcome = self.controller.stabilize(now)
            except ControllerError as e:
                self._handle_rejection(e, now)
            except Exception as e:
                logger.exception("Stabilize failed: %s", e)
                self.last_error = {"error": e.__class__.__name__, "kind": FATAL, "message": str(e), "at": now}
                self._count_failure(f"unexpected error: {e.__class__.__name__}")
            else:
                self._record_success(outcome, now)
            self._save_snapshot()

    def _record_success(self, outcome: ActionOutcome, now: int) -> None:
        self.consecutive_errors = 0
        self.last_error = None
        self._last_alerted_error = ""
        self.last_outcome = {**outcome.to_dict(), "at": now}
        if self.market_sim is not None:
            self.market_sim.apply_outcome(outcome)

    def _handle_rejection(self, e: ControllerError, now: int) -> None:
        self.last_error = {**e.to_dict(), "at": now}
        if isinstance(e, InCooldownError):
            logger.debug("Skipped: %s", e)
            return
        if isinstance(e, StalePriceError):
            logger.warning("Stale market price: %s", e)
            self._count_failure("stale price data")
            return
        if e.kind == RETRY_LATER:
            logger.info("Retry later: %s", e)
            return
        if e.kind == FATAL:
            logger.error("Fatal controller error: %s", e)
            self._halt(f"fatal error: {e.message}")
            return

        logger.warning("Stabilize rejected (%s): %s", e.__class__.__name__, e)
        alert_key = e.__class__.__name__
        if alert_key != self._last_alerted_error:
            self._last_alerted_error = alert_key
            notifier.notify_error(f"{alert_key}: {e.message}")

    def _count_failure(self, what: str) -> None:
        self.consecutive_errors += 1
        if self.consecutive_errors >= config.MAX_CONSECUTIVE_ERRORS:
            self._halt(f"{self.consecutive_errors} consecutive failures ({what})")

    def _halt(self, reason: str) -> None:
        if self.controller.state.halted:
            return
        try:
            self.controller.halt(reason)
        except ControllerError as e:
            logger.error("Could not halt controller: %s", e)

    # ------------------ Operator API ------------------

    def status_payload(self) -> dict:
        with self.lock:
            return {
                "mode": "DRY_RUN" if config.DRY_RUN else "LIVE",
                "running": self.running,
                "started_at": self.started_at,
                "loops": self.loops,
                "consecutive_errors": self.consecutive_errors,
                "status": self.controller.status(),
                "statistics": self.controller.statistics(),
                "last_outcome": self.last_outcome,
                "last_error": self.last_error,
            }

    def handle_action(self, action: str, body: dict) -> tuple[bool, str, dict]:
        with self.lock:
            if action == "halt":
                self.controller.halt(str(body.get("reason") or "halted by operator"))
                return True, "halted", {}
            if action == "resume":
                self.controller.resume()
                self.consecutive_errors = 0
                return True, "resumed", {}
            if action == "stabilize":
                now = _now()
                outcome = self.controller.stabilize(now)
                self._record_success(outcome, now)
                return True, outcome.action, outcome.to_dict()
            if action == "update_parameters":
                updates = body.get("params")
                if not isinstance(updates, dict):
                    raise ParameterValidationError("params must be an object")
                params = pm.from_dict(updates, base=self.controller.parameters)
                self.controller.update_parameters(params)
                return True, "parameters updated", params.to_dict()
            return False, f"unknown action: {action}", {}


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True


def check_operator_token(supplied: str) -> None:
    if not config.OPERATOR_TOKEN:
        return
    if not hmac.compare_digest(str(supplied or ""), config.OPERATOR_TOKEN):
        raise UnauthorizedError("missing or invalid operator token")


_STATUS_CODES = {
    "retry_later": 409,
    "needs_intervention": 409,
    "fix_input": 400,
    "fatal": 500,
}


class KeeperHandler(BaseHTTPRequestHandler):
    def log_message(self, fmt: str, *args: Any) -> None:  # noqa: D401
        logger.info("HTTP %s - %s", self.address_string(), fmt % args)

    def _send_json(self, data: dict, code: int = 200) -> None:
        payload = json.dumps(data).encode("utf-8")
        self.send_response(code)
        self.send_header("Content-Type", "application/json")
        self.send_header("Cache-Control", "no-store, no-cache, must-revalidate, max-age=0")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _read_json(self) -> dict:
        n = int(self.headers.get("Content-Length", "0") or "0")
        if n <= 0:
            return {}
        raw = self.rfile.read(n)
        try:
            body = json.loads(raw.decode("utf-8"))
        except Exception as exc:
            raise ValueError("invalid request body") from exc
        if not isinstance(body, dict):
            raise ValueError("invalid request body")
        return body

    def do_GET(self) -> None:  # noqa: N802
        rt = _RUNTIME
        if rt is None:
            self._send_json({"error": "runtime not ready"}, 503)
            return
        if self.path.startswith("/api/status"):
            self._send_json(rt.status_payload())
            return
        if self.path.startswith("/api/statistics"):
            self._send_json(rt.controller.statistics())
            return
        if self.path.startswith("/api/parameters"):
            self._send_json(rt.controller.parameters.to_dict())
            return
        self._send_json({"error": "not found"}, 404)

    def do_POST(self) -> None:  # noqa: N802
        rt = _RUNTIME
        try:
            if not self.path.startswith("/api/action"):
                self._send_json({"ok": False, "message": "not found"}, 404)
                return
            if rt is None:
                self._send_json({"ok": False, "message": "runtime not ready"}, 503)
                return
            try:
                body = self._read_json()
            except ValueError:
                self._send_json({"ok": False, "message": "invalid request body"}, 400)
                return
            check_operator_token(self.headers.get("X-Operator-Token", ""))

            action = str(body.get("action") or "").strip()
            ok, msg, data = rt.handle_action(action, body)
            rt._save_snapshot()
            self._send_json({"ok": ok, "message": msg, "data": data}, 200 if ok else 400)
        except UnauthorizedError as e:
            self._send_json({"ok": False, **e.to_dict()}, 403)
        except ControllerError as e:
            self._send_json({"ok": False, **e.to_dict()}, _STATUS_CODES.get(e.kind, 400))
        except Exception:
            logger.exception("Unhandled exception in /api/action")
            self._send_json({"ok": False, "message": "internal server error"}, 500)


def start_http_server() -> ThreadingHTTPServer | None:
    if config.HEALTH_PORT <= 0:
        return None
    server = ThreadingHTTPServer(("0.0.0.0", int(config.HEALTH_PORT)), KeeperHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True, name="keeper-http")
    thread.start()
    logger.info("HTTP server started on :%s", config.HEALTH_PORT)
    return server


def run(runtime: KeeperRuntime | None = None) -> None:
    global _RUNTIME
    setup_logging()
    config.print_banner()

    if runtime is None:
        if not config.DRY_RUN:
            raise SystemExit(
                "LIVE mode needs real oracle/ledger collaborators: build a KeeperRuntime "
                "around your own PegController and pass it to keeper.run()"
            )
        controller, market = build_dry_run_controller()
        runtime = KeeperRuntime(controller, market_sim=market)
    rt = runtime
    _RUNTIME = rt

    def _handle_signal(signum, _frame):
        logger.info("Signal %s received", signum)
        rt.shutdown(f"signal {signum}")

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    server = None
    try:
        rt.initialize()
        server = start_http_server()

        poll = max(1, int(config.POLL_INTERVAL_SECONDS))
        logger.info("Entering main loop (every %ss)", poll)

        while rt.running:
            loop_start = time.time()
            try:
                rt.run_loop_once()
            except Exception as e:
                logger.exception("Main loop error: %s", e)
            elapsed = time.time() - loop_start
            time.sleep(max(0.2, poll - elapsed))

    finally:
        if server is not None:
            server.shutdown()
        rt.shutdown("process exit")


if __name__ == "__main__":
    run()
