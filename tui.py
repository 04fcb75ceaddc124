# tui.py
"""
nimping TUI — live terminal table of NIM model availability and latency.

Features:
- Probes every selected model concurrently (see probe.py) while a fixed-cadence
  display loop redraws the table on the alternate screen
- Top-3 fastest models (all four pings in) get medals and a highlighted row;
  averages above the slow threshold get a 💩 marker
- Outstanding pings animate as braille spinners, out of phase per column
- Ctrl-C (or SIGTERM) leaves the alternate screen and prints the last frame
- A single final table is printed to normal scrollback once everything settles

Requirements:
  rich
  typer
  httpx, PyYAML (via probe.py import)

Usage:
  nimping [API_KEY] --tier S,A --config ./config.yaml --log-file ./nimping.log
  nimping-agent agent [API_KEY] --tier S,A   # line per settled target, then the table
  nimping-agent check --config ./config.yaml
"""
from __future__ import annotations

import asyncio
import io
import logging
import signal
from typing import Dict, List, Optional, Sequence

import typer
from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.table import Table
from rich.text import Text

from probe import (
    NUM_PINGS,
    Config,
    Orchestrator,
    ProbeFn,
    ProbeResult,
    RecordView,
    Snapshot,
    Status,
    Target,
    TargetRecord,
    average_ms,
    check,
    make_client,
    prepare,
    require_key,
    run_probe,
)

app = typer.Typer(add_completion=False)
agent_app = typer.Typer(add_completion=False, help="nimping headless agent (no live screen)")
console = Console()
logger = logging.getLogger(__name__)

FRAMES = "⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏"
CELL_W = 9
COL_MODEL = 22
SLOT_PHASE = 3
EXIT_CANCELLED = 130

TIER_STYLE = {
    "S": "bold bright_yellow",
    "A": "bold bright_cyan",
    "B": "bold bright_green",
    "C": "dim",
}
MEDALS = ("🥇", "🥈", "🥉")
RANK_STYLE = ("bold bright_yellow", "bold grey70", "bold yellow")
TOP_ROW_STYLE = "on rgb(0,100,0)"


# --------------------
# Cell formatting
# --------------------

def dash() -> Text:
    return Text("—", style="dim")


def spin(tick: int, offset: int = 0) -> Text:
    return Text(FRAMES[(tick + offset) % len(FRAMES)], style="dim yellow")


def fmt_ms(ms: int) -> Text:
    if ms < 500:
        style = "bright_green"
    elif ms < 1500:
        style = "yellow"
    else:
        style = "red"
    return Text(str(ms), style=style)


def fmt_status(rec: RecordView, tick: int, max_attempts: int) -> Text:
    frame = FRAMES[tick % len(FRAMES)]
    if rec.status is Status.PENDING:
        return Text(f"{frame}  wait", style="dim yellow")
    if rec.status is Status.RETRYING:
        return Text(f"{frame} retry {rec.attempt}/{max_attempts}", style="yellow")
    if rec.status is Status.UP:
        return Text("✅ UP", style="bold bright_green")
    if rec.status is Status.TIMEOUT:
        return Text("⏱  T/O", style="bold yellow")
    code = (rec.error_code or "ERR")[:5]
    return Text(f"❌ {code}", style="bold red")


def _truncate(label: str, width: int) -> str:
    return label if len(label) <= width else label[:width]


# --------------------
# Ranking
# --------------------

def rank_fastest(records: Sequence[RecordView], limit: int = 3) -> Dict[int, int]:
    """Map seq -> rank (0 = fastest) for up targets with every ping recorded.

    Ties on average fall back to ascending seq. Recomputed for every frame.
    """
    eligible = [r for r in records if r.complete]
    eligible.sort(key=lambda r: (r.average_ms, r.seq))
    return {r.seq: i for i, r in enumerate(eligible[:limit])}


# --------------------
# Rendering
# --------------------

def phase_text(snapshot: Snapshot) -> Text:
    remaining = sum(1 for r in snapshot.records if not r.status.settled)
    if remaining:
        return Text(f"discovering — {remaining} remaining…", style="dim")
    if snapshot.in_flight > 0:
        return Text(f"measuring latency — {snapshot.in_flight} pings in flight…", style="dim")
    return Text("complete ✓", style="dim")


def build_header(snapshot: Snapshot, tier_filter: Optional[Sequence[str]] = None) -> Text:
    counts = {s: 0 for s in Status}
    for r in snapshot.records:
        counts[r.status] += 1
    header = Text("  ")
    header.append("⚡ NIM Coding Models", style="bold")
    if tier_filter:
        header.append(f"  [tier: {', '.join(tier_filter)}]", style="dim")
    header.append("   ")
    header.append(f"✅ {counts[Status.UP]}", style="bright_green")
    header.append(" up  ", style="dim")
    header.append(f"⏱ {counts[Status.TIMEOUT]}", style="yellow")
    header.append(" t/o  ", style="dim")
    header.append(f"❌ {counts[Status.DOWN]}", style="red")
    header.append(" down  ", style="dim")
    header.append(f"⏳ {counts[Status.PENDING] + counts[Status.RETRYING]}", style="dim yellow")
    header.append(" pending  ", style="dim")
    header.append_text(phase_text(snapshot))
    return header


def _name_cell(rec: RecordView, rank: Optional[int], slow_threshold_ms: int) -> Text:
    prefix = ""
    avg = rec.average_ms
    if rec.status is Status.UP and avg is not None and avg > slow_threshold_ms:
        prefix = "💩 "
    elif rank is not None:
        prefix = f"{MEDALS[rank]} "
    # Emoji prefixes render two cells wide.
    width = COL_MODEL - 3 if prefix else COL_MODEL
    return Text(prefix + _truncate(rec.target.label, width))


def _ping_cells(rec: RecordView, tick: int) -> List[Text]:
    if rec.status is not Status.UP:
        return [dash() for _ in rec.measurements]
    cells = []
    for slot, ms in enumerate(rec.measurements):
        if ms is not None:
            cells.append(fmt_ms(ms))
        elif slot in rec.outstanding:
            cells.append(spin(tick, slot * SLOT_PHASE))
        else:
            cells.append(dash())  # follow-up timed out
    return cells


def _avg_cell(rec: RecordView, rank: Optional[int], tick: int) -> Text:
    if rec.status is not Status.UP:
        return dash()
    avg = rec.average_ms
    if avg is None:
        return spin(tick)
    style = RANK_STYLE[rank] if rank is not None else "bold bright_cyan"
    return Text(f"{avg:.0f}", style=style)


def build_table(snapshot: Snapshot, config: Config) -> Table:
    ranks = rank_fastest(snapshot.records)
    tbl = Table(box=box.SIMPLE_HEAVY, padding=(0, 1), header_style="dim")
    tbl.add_column("#", justify="right", width=3, no_wrap=True, style="dim")
    tbl.add_column("Tier", width=4, no_wrap=True)
    tbl.add_column("Model", width=COL_MODEL, no_wrap=True)
    for n in range(1, NUM_PINGS + 1):
        tbl.add_column(f"PING{n}", justify="right", width=CELL_W, no_wrap=True)
    tbl.add_column("Avg", justify="right", width=CELL_W, no_wrap=True)
    tbl.add_column("Status", width=CELL_W + 4, no_wrap=True)

    # Rows stay in registry order; only the annotations move.
    for rec in sorted(snapshot.records, key=lambda r: r.seq):
        rank = ranks.get(rec.seq)
        row = [
            Text(str(rec.seq)),
            Text(rec.target.tier, style=TIER_STYLE.get(rec.target.tier, "white")),
            _name_cell(rec, rank, config.slow_threshold_ms),
            *_ping_cells(rec, snapshot.tick),
            _avg_cell(rec, rank, snapshot.tick),
            fmt_status(rec, snapshot.tick, config.max_attempts),
        ]
        tbl.add_row(*row, style=TOP_ROW_STYLE if rank is not None else None)
    return tbl


def build_view(snapshot: Snapshot, config: Config, tier_filter: Optional[Sequence[str]] = None) -> Group:
    return Group(Text(""), build_header(snapshot, tier_filter), Text(""), build_table(snapshot, config))


def render_text(snapshot: Snapshot, config: Config, tier_filter: Optional[Sequence[str]] = None,
                width: int = 160) -> str:
    """Render one frame to plain text; same snapshot in, same string out."""
    buf = io.StringIO()
    out = Console(file=buf, width=width, color_system=None, force_terminal=False, legacy_windows=False)
    out.print(build_view(snapshot, config, tier_filter))
    return buf.getvalue()


# --------------------
# Display loop
# --------------------

async def display_loop(orch: Orchestrator, live: Live, config: Config, stop: asyncio.Event,
                       tier_filter: Optional[Sequence[str]] = None) -> int:
    """Redraw at config.fps until the orchestrator finishes or stop is set.

    Only reads state through Orchestrator.snapshot. Returns the last tick.
    """
    interval = 1.0 / config.fps
    waiters = [asyncio.ensure_future(orch.done.wait()), asyncio.ensure_future(stop.wait())]
    tick = 0
    try:
        while True:
            live.update(build_view(orch.snapshot(tick), config, tier_filter), refresh=True)
            finished, _ = await asyncio.wait(waiters, timeout=interval, return_when=asyncio.FIRST_COMPLETED)
            if finished:
                return tick
            tick += 1
    finally:
        for w in waiters:
            w.cancel()


def _install_signal_handlers(stop: asyncio.Event) -> List[int]:
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError, ValueError):
            pass
    return installed


async def run_session(config: Config, probe: ProbeFn, out: Console,
                      tier_filter: Optional[Sequence[str]] = None,
                      stop: Optional[asyncio.Event] = None) -> int:
    """Probe config.targets under a live screen; print the final frame once.

    Returns 0 once every target settled, EXIT_CANCELLED if stopped early.
    """
    stop = stop or asyncio.Event()
    orch = Orchestrator(config.targets, probe, max_attempts=config.max_attempts)
    installed = _install_signal_handlers(stop)
    worker = asyncio.create_task(orch.run())
    tick = 0
    logger.info("session start: %d targets", len(config.targets))
    try:
        with Live(build_view(orch.snapshot(), config, tier_filter), console=out, screen=True,
                  auto_refresh=False, transient=True) as live:
            tick = await display_loop(orch, live, config, stop, tier_filter)
    finally:
        final = orch.snapshot(tick)
        completed = orch.done.is_set()
        if not worker.done():
            worker.cancel()
        await asyncio.gather(worker, return_exceptions=True)
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
        out.print(build_view(final, config, tier_filter))
        logger.info("session %s at tick %d", "complete" if completed else "cancelled", tick)
    return 0 if completed else EXIT_CANCELLED


async def _main(config: Config, api_key: str, tier_filter: Optional[Sequence[str]]) -> int:
    async with make_client() as client:
        async def do_probe(target: Target) -> ProbeResult:
            return await run_probe(client, target, api_key, config.url, config.timeout_secs)
        return await run_session(config, do_probe, console, tier_filter)


def setup_logging(log_file: Optional[str]) -> None:
    # Only log to file; anything on the terminal would tear the live screen.
    if log_file:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file)],
        )
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    else:
        logging.basicConfig(handlers=[logging.NullHandler()])


# --------------------
# Main
# --------------------

@app.command()
def main(api_key: Optional[str] = typer.Argument(None, help="NVIDIA API key (overrides env and saved key)"),
         tier: Optional[str] = typer.Option(None, help="Comma separated tiers to probe, e.g. S or S,A"),
         config: Optional[str] = typer.Option(None, help="Path to config.yaml"),
         log_file: Optional[str] = typer.Option(None, help="Write debug log to this file")):
    """Ping NIM coding models in parallel and show live availability and latency."""
    setup_logging(log_file)
    cfg, tiers = prepare(config, tier)
    key = require_key(api_key)
    code = asyncio.run(_main(cfg, key, tiers))
    raise typer.Exit(code=code)


# --------------------
# Headless agent
# --------------------

def _status_line(record: TargetRecord) -> None:
    t = record.target
    if record.status is Status.UP and record.outstanding:
        typer.secho(f"📡 {t.label} [{t.tier}]: up {record.measurements[0]}ms (attempt {record.attempt})",
                    fg=typer.colors.GREEN)
    elif record.status is Status.UP:
        avg = average_ms(record.measurements)
        typer.secho(f"✅ {t.label} [{t.tier}]: avg {avg:.0f}ms", fg=typer.colors.BRIGHT_GREEN)
    elif record.status is Status.TIMEOUT:
        typer.secho(f"⏱  {t.label} [{t.tier}]: timeout after {record.attempt} attempts", fg=typer.colors.YELLOW)
    else:
        typer.secho(f"❌ {t.label} [{t.tier}]: down ({record.error_code})", fg=typer.colors.RED)


async def agent_loop(cfg: Config, api_key: str) -> Orchestrator:
    async with make_client() as client:
        async def do_probe(target: Target) -> ProbeResult:
            return await run_probe(client, target, api_key, cfg.url, cfg.timeout_secs)

        orch = Orchestrator(cfg.targets, do_probe, max_attempts=cfg.max_attempts, on_change=_status_line)
        typer.secho(f"🚀 Probing {len(cfg.targets)} models", fg=typer.colors.CYAN, bold=True)
        await orch.run()
    return orch


@agent_app.command()
def agent(api_key: Optional[str] = typer.Argument(None, help="NVIDIA API key (overrides env and saved key)"),
          tier: Optional[str] = typer.Option(None, help="Comma separated tiers to probe, e.g. S,A"),
          config: Optional[str] = typer.Option(None, help="Path to config.yaml")):
    """Probe every selected model without the live screen; print the final table."""
    cfg, tiers = prepare(config, tier)
    key = require_key(api_key, interactive=False)
    orch = asyncio.run(agent_loop(cfg, key))
    console.print(build_view(orch.snapshot(), cfg, tiers))


agent_app.command("check")(check)


if __name__ == "__main__":
    app()
