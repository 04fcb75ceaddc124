# probe.py
"""
nimping probe side — concurrent liveness/latency probing of NIM model endpoints.

Features:
- Optional YAML config (endpoint, timeout, retry budget, render cadence, targets)
- One bounded HTTP probe primitive (httpx, hard total timeout)
- Per-target state machine: pending -> retrying* -> up | timeout | down
- Three concurrent follow-up probes per up target, each bound to a fixed slot
- Orchestrator that fans out every target at once and exposes a completion event
- `check` command (config summary, key presence); the headless agent lives in tui.py

CLI:
  python probe.py check --config ./config.yaml

Requirements (see pyproject.toml):
  httpx
  PyYAML
  typer

Stdlib only otherwise (asyncio, dataclasses, enum, logging, time)
"""
from __future__ import annotations

import asyncio
import dataclasses
import enum
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, FrozenSet, List, Optional, Sequence, Tuple

import httpx
import typer
import yaml

import keystore
import registry

app = typer.Typer(add_completion=False, help="nimping probe side: config check")
logger = logging.getLogger(__name__)

NIM_URL = "https://integrate.api.nvidia.com/v1/chat/completions"
PING_TIMEOUT_SECS = 20.0  # per attempt before abort
MAX_ATTEMPTS = 4          # tries before declaring a final timeout
NUM_PINGS = 4             # qualifying attempt + follow-ups
FPS = 12
SLOW_THRESHOLD_MS = 3000

TIMEOUT_CODE = "000"
TRANSPORT_ERROR_CODE = "ERR"


# -------------------------
# Config models (lightweight)
# -------------------------

@dataclass(frozen=True)
class Target:
    id: str
    label: str
    tier: str


@dataclass
class Config:
    url: str = NIM_URL
    timeout_secs: float = PING_TIMEOUT_SECS
    max_attempts: int = MAX_ATTEMPTS
    fps: int = FPS
    slow_threshold_ms: int = SLOW_THRESHOLD_MS
    targets: List[Target] = dataclasses.field(default_factory=list)


def default_targets() -> List[Target]:
    return [Target(id=mid, label=label, tier=tier) for mid, label, tier in registry.MODELS]


def load_config(path: Optional[str]) -> Config:
    """Load an optional YAML config; no path means built-in defaults and registry."""
    if not path:
        return Config(targets=default_targets())
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config root must be a mapping: {path}")

    targets = []
    for t in raw.get("targets") or []:
        if not isinstance(t, dict):
            raise ValueError(f"Target entry must be a mapping with id, label and tier: {t!r}")
        for k in ("id", "label", "tier"):
            if k not in t:
                raise ValueError(f"Target missing key {k}: {t}")
        tier = str(t["tier"]).upper()
        if tier not in registry.TIERS:
            raise ValueError(f"Invalid tier '{t['tier']}' for target {t['id']}")
        targets.append(Target(id=str(t["id"]), label=str(t["label"]), tier=tier))

    url = str(raw.get("url", NIM_URL))
    try:
        scheme = httpx.URL(url).scheme
    except httpx.InvalidURL as e:
        raise ValueError(f"Invalid url {url!r}: {e}") from e
    if scheme not in ("http", "https"):
        raise ValueError(f"Invalid url {url!r}: scheme must be http or https")

    cfg = Config(
        url=url,
        timeout_secs=float(raw.get("timeout_secs", PING_TIMEOUT_SECS)),
        max_attempts=int(raw.get("max_attempts", MAX_ATTEMPTS)),
        fps=int(raw.get("fps", FPS)),
        slow_threshold_ms=int(raw.get("slow_threshold_ms", SLOW_THRESHOLD_MS)),
        targets=targets or default_targets(),
    )
    for name in ("timeout_secs", "max_attempts", "fps", "slow_threshold_ms"):
        if getattr(cfg, name) <= 0:
            raise ValueError(f"Config value {name} must be positive, got {getattr(cfg, name)}")
    return cfg


# -------------------------
# Probe primitive
# -------------------------

class Outcome(enum.Enum):
    SUCCESS = "success"
    TIMEOUT = "timeout"
    FAILURE = "failure"


@dataclass(frozen=True)
class ProbeResult:
    latency_ms: int
    outcome: Outcome
    error_code: Optional[str] = None


ProbeFn = Callable[[Target], Awaitable[ProbeResult]]


def _elapsed_ms(t0: float) -> int:
    return int(round((time.perf_counter() - t0) * 1000))


async def run_probe(client: httpx.AsyncClient, target: Target, api_key: str, url: str = NIM_URL,
                    timeout: float = PING_TIMEOUT_SECS) -> ProbeResult:
    """One request, no retries. Network faults are folded into the result."""
    payload = {"model": target.id, "messages": [{"role": "user", "content": "hi"}], "max_tokens": 1}
    headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
    t0 = time.perf_counter()
    try:
        resp = await asyncio.wait_for(client.post(url, json=payload, headers=headers), timeout=timeout)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        result = ProbeResult(_elapsed_ms(t0), Outcome.TIMEOUT, TIMEOUT_CODE)
    except (httpx.HTTPError, httpx.InvalidURL, OSError) as e:
        logger.debug("probe %s transport error: %r", target.id, e)
        result = ProbeResult(_elapsed_ms(t0), Outcome.FAILURE, TRANSPORT_ERROR_CODE)
    else:
        ms = _elapsed_ms(t0)
        if resp.status_code == 200:
            result = ProbeResult(ms, Outcome.SUCCESS)
        else:
            result = ProbeResult(ms, Outcome.FAILURE, str(resp.status_code))
    logger.debug("probe %s -> %s %sms (%s)", target.id, result.outcome.value, result.latency_ms, result.error_code)
    return result


def make_client() -> httpx.AsyncClient:
    # No admission control: every target and follow-up gets its own connection.
    limits = httpx.Limits(max_connections=None, max_keepalive_connections=None)
    return httpx.AsyncClient(limits=limits, timeout=None, headers={"User-Agent": "nimping"})


# -------------------------
# Target state machine
# -------------------------

class Status(enum.Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    UP = "up"
    TIMEOUT = "timeout"
    DOWN = "down"

    @property
    def settled(self) -> bool:
        return self in (Status.UP, Status.TIMEOUT, Status.DOWN)


class TransitionError(RuntimeError):
    """Raised when a record is asked to make a move its state machine forbids."""


def average_ms(measurements: Sequence[Optional[int]]) -> Optional[float]:
    valid = [m for m in measurements if m is not None]
    if not valid:
        return None
    return sum(valid) / len(valid)


@dataclass(frozen=True)
class RecordView:
    """Immutable copy of a TargetRecord taken for one rendered frame."""
    seq: int
    target: Target
    status: Status
    attempt: int
    measurements: Tuple[Optional[int], ...]
    outstanding: FrozenSet[int]
    error_code: Optional[str]

    @property
    def average_ms(self) -> Optional[float]:
        return average_ms(self.measurements)

    @property
    def complete(self) -> bool:
        return self.status is Status.UP and all(m is not None for m in self.measurements)


class TargetRecord:
    """Mutable per-target state; only its own TargetRunner writes to it."""

    def __init__(self, seq: int, target: Target):
        self.seq = seq
        self.target = target
        self.status = Status.PENDING
        self.attempt = 1
        self.measurements: List[Optional[int]] = [None] * NUM_PINGS
        self.outstanding: set = set()
        self.error_code: Optional[str] = None

    def _require(self, *allowed: Status) -> None:
        if self.status not in allowed:
            raise TransitionError(f"{self.target.id}: cannot leave {self.status.value} this way")

    def mark_retrying(self, attempt: int) -> None:
        self._require(Status.PENDING, Status.RETRYING)
        if attempt <= self.attempt:
            raise TransitionError(f"{self.target.id}: attempt {attempt} does not advance {self.attempt}")
        self.status = Status.RETRYING
        self.attempt = attempt

    def mark_up(self, latency_ms: int) -> None:
        self._require(Status.PENDING, Status.RETRYING)
        self.measurements[0] = latency_ms
        self.outstanding = set(range(1, NUM_PINGS))
        self.status = Status.UP

    def mark_timeout(self) -> None:
        self._require(Status.PENDING, Status.RETRYING)
        self.status = Status.TIMEOUT

    def mark_down(self, error_code: Optional[str]) -> None:
        self._require(Status.PENDING, Status.RETRYING)
        self.error_code = error_code or TRANSPORT_ERROR_CODE
        self.status = Status.DOWN

    def set_measurement(self, slot: int, latency_ms: Optional[int]) -> None:
        """Fill follow-up slot 1..3 (0-based index); None leaves it empty."""
        self._require(Status.UP)
        if slot not in self.outstanding:
            raise TransitionError(f"{self.target.id}: slot {slot + 1} is not awaiting a result")
        self.measurements[slot] = latency_ms
        self.outstanding.discard(slot)

    def view(self) -> RecordView:
        return RecordView(
            seq=self.seq,
            target=self.target,
            status=self.status,
            attempt=self.attempt,
            measurements=tuple(self.measurements),
            outstanding=frozenset(self.outstanding),
            error_code=self.error_code,
        )


class InFlightCounter:
    """Outstanding follow-up probes across all targets.

    Every mutation runs on the event loop thread between awaits, which
    serializes the concurrent follow-up tasks that share it.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def value(self) -> int:
        return self._value

    def add(self, n: int) -> None:
        self._value += n

    def done(self) -> None:
        if self._value <= 0:
            raise RuntimeError("in-flight counter underflow")
        self._value -= 1


class TargetRunner:
    def __init__(self, record: TargetRecord, probe: ProbeFn, counter: InFlightCounter,
                 max_attempts: int = MAX_ATTEMPTS,
                 on_change: Optional[Callable[[TargetRecord], None]] = None):
        self.record = record
        self.probe = probe
        self.counter = counter
        self.max_attempts = max_attempts
        self.on_change = on_change

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self.record)

    async def qualify(self) -> ProbeResult:
        """Retry on timeout only; any other outcome ends the loop."""
        result = await self.probe(self.record.target)
        attempt = 1
        while result.outcome is Outcome.TIMEOUT and attempt < self.max_attempts:
            attempt += 1
            self.record.mark_retrying(attempt)
            logger.debug("%s timed out, retry %d/%d", self.record.target.id, attempt, self.max_attempts)
            result = await self.probe(self.record.target)
        return result

    def settle(self, result: ProbeResult) -> None:
        if result.outcome is Outcome.SUCCESS:
            self.record.mark_up(result.latency_ms)
        elif result.outcome is Outcome.TIMEOUT:
            self.record.mark_timeout()
        else:
            self.record.mark_down(result.error_code)
        logger.info("%s settled %s after %d attempt(s)", self.record.target.id,
                    self.record.status.value, self.record.attempt)
        self._notify()

    async def measure(self, slot: int) -> None:
        try:
            result = await self.probe(self.record.target)
            latency = None if result.outcome is Outcome.TIMEOUT else result.latency_ms
            self.record.set_measurement(slot, latency)
        finally:
            self.counter.done()

    async def follow_up(self) -> None:
        slots = sorted(self.record.outstanding)
        self.counter.add(len(slots))
        # Slots are bound at issuance; completion order does not matter.
        outcomes = await asyncio.gather(*(self.measure(s) for s in slots), return_exceptions=True)
        for slot, exc in zip(slots, outcomes):
            if isinstance(exc, Exception):
                logger.error("%s follow-up slot %d crashed: %r", self.record.target.id, slot + 1, exc)
                if slot in self.record.outstanding:
                    self.record.set_measurement(slot, None)
        self._notify()

    async def run(self) -> None:
        self.settle(await self.qualify())
        if self.record.status is Status.UP:
            await self.follow_up()


# -------------------------
# Orchestrator
# -------------------------

@dataclass(frozen=True)
class Snapshot:
    records: Tuple[RecordView, ...]
    in_flight: int
    tick: int = 0


class Orchestrator:
    """Runs one TargetRunner per record, all at once, and signals completion."""

    def __init__(self, targets: Sequence[Target], probe: ProbeFn, max_attempts: int = MAX_ATTEMPTS,
                 on_change: Optional[Callable[[TargetRecord], None]] = None):
        self.records = [TargetRecord(i, t) for i, t in enumerate(targets, start=1)]
        self.counter = InFlightCounter()
        self.done = asyncio.Event()
        self._runners = [
            TargetRunner(r, probe, self.counter, max_attempts=max_attempts, on_change=on_change)
            for r in self.records
        ]

    @property
    def in_flight(self) -> int:
        return self.counter.value

    def snapshot(self, tick: int = 0) -> Snapshot:
        # Synchronous: no await between reads, so no record is seen half-written.
        return Snapshot(records=tuple(r.view() for r in self.records), in_flight=self.counter.value, tick=tick)

    async def _run_isolated(self, runner: TargetRunner) -> None:
        try:
            await runner.run()
        except Exception:
            logger.exception("runner for %s crashed", runner.record.target.id)
            if not runner.record.status.settled:
                runner.record.mark_down(TRANSPORT_ERROR_CODE)

    async def run(self) -> None:
        logger.info("probing %d targets", len(self.records))
        try:
            await asyncio.gather(*(self._run_isolated(r) for r in self._runners))
        finally:
            self.done.set()
        logger.info("all targets settled")


# -------------------------
# CLI commands
# -------------------------

def prepare(config: Optional[str], tier: Optional[str]) -> Tuple[Config, Optional[List[str]]]:
    """Load config and apply the tier selection; exits with code 1 on bad input."""
    try:
        cfg = load_config(config)
        tiers = registry.parse_tiers(tier)
        cfg.targets = registry.filter_by_tier(cfg.targets, tiers)
    except (OSError, ValueError, yaml.YAMLError) as e:
        typer.secho(f"  ✖ {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
    return cfg, tiers


def require_key(cli_key: Optional[str], interactive: bool = True) -> str:
    key = keystore.resolve_api_key(cli_key, interactive=interactive)
    if not key:
        typer.secho("  ✖ No API key provided.", fg=typer.colors.RED, err=True)
        typer.secho(f"  Run `nimping` again or set {keystore.ENV_VAR} env var.", dim=True, err=True)
        raise typer.Exit(code=1)
    return key


@app.callback()
def cli():
    """nimping probe side. The live UI is `nimping`; headless runs are `nimping-agent agent`."""


@app.command()
def check(config: Optional[str] = typer.Option(None, help="Path to config.yaml")):
    """Print config summary and whether an API key is available."""
    cfg, _ = prepare(config, None)
    key = keystore.resolve_api_key(None, interactive=False)
    per_tier = {t: sum(1 for x in cfg.targets if x.tier == t) for t in registry.TIERS}
    typer.echo(f"API key present: {'yes' if key else 'NO'}")
    typer.echo(f"Endpoint: {cfg.url}")
    typer.echo(f"Targets: {len(cfg.targets)} | " + " ".join(f"{t}:{n}" for t, n in per_tier.items()))
    typer.echo(f"Timeout: {cfg.timeout_secs:g}s x {cfg.max_attempts} attempts | {cfg.fps} fps")


if __name__ == "__main__":
    app()
