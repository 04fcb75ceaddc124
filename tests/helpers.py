import asyncio
from typing import Dict, List, Tuple, Union

from probe import Outcome, ProbeResult, Target

Step = Union[ProbeResult, Tuple[float, ProbeResult]]


def ok(ms: int) -> ProbeResult:
    return ProbeResult(ms, Outcome.SUCCESS)


def timeout(ms: int = 20000) -> ProbeResult:
    return ProbeResult(ms, Outcome.TIMEOUT, "000")


def fail(code: str, ms: int = 50) -> ProbeResult:
    return ProbeResult(ms, Outcome.FAILURE, code)


class ScriptedProbe:
    """Hands out pre-baked results per target id, in call order.

    A step may be (delay_secs, result) to make that call resolve later.
    """

    def __init__(self, script: Dict[str, List[Step]]):
        self.script = {k: list(v) for k, v in script.items()}
        self.calls: List[str] = []

    async def __call__(self, target: Target) -> ProbeResult:
        self.calls.append(target.id)
        step = self.script[target.id].pop(0)
        if isinstance(step, tuple):
            delay, step = step
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        return step

    def count(self, target_id: str) -> int:
        return self.calls.count(target_id)
