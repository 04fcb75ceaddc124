# registry.py
"""
Static registry of NIM coding models probed by nimping.

Each entry is (model_id, display_label, tier); entries are sorted best to worst
within each tier. The registry is plain data: callers build their own target
list from it (optionally filtered by tier) and hand that list to the probe side.
"""
from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

TIERS: Tuple[str, ...] = ("S", "A", "B", "C")

MODELS: Tuple[Tuple[str, str, str], ...] = (
    # S-tier
    ("moonshotai/kimi-k2.5", "Kimi K2.5", "S"),
    ("z-ai/glm5", "GLM 5", "S"),
    ("qwen/qwen3-coder-480b-a35b-instruct", "Qwen3 Coder 480B", "S"),
    ("qwen/qwen3.5-397b-a17b", "Qwen3.5 400B VLM", "S"),
    ("nvidia/nemotron-3-nano-30b-a3b", "Nemotron Nano 30B", "S"),
    ("deepseek-ai/deepseek-v3.2", "DeepSeek V3.2", "S"),
    ("nvidia/llama-3.1-nemotron-ultra-253b-v1", "Nemotron Ultra 253B", "S"),
    ("mistralai/mistral-large-3-675b-instruct-2512", "Mistral Large 675B", "S"),
    ("qwen/qwen3-235b-a22b", "Qwen3 235B", "S"),
    ("minimaxai/minimax-m2.1", "MiniMax M2.1", "S"),
    ("mistralai/devstral-2-123b-instruct-2512", "Devstral 2 123B", "S"),
    # A-tier
    ("z-ai/glm4.7", "GLM 4.7", "A"),
    ("moonshotai/kimi-k2-thinking", "Kimi K2 Thinking", "A"),
    ("moonshotai/kimi-k2-instruct", "Kimi K2 Instruct", "A"),
    ("deepseek-ai/deepseek-v3.1", "DeepSeek V3.1", "A"),
    ("deepseek-ai/deepseek-v3.1-terminus", "DeepSeek V3.1 Term", "A"),
    ("deepseek-ai/deepseek-r1-distill-qwen-14b", "R1 Distill 14B", "A"),
    ("qwen/qwq-32b", "QwQ 32B", "A"),
    ("qwen/qwen3-next-80b-a3b-thinking", "Qwen3 80B Thinking", "A"),
    ("qwen/qwen3-next-80b-a3b-instruct", "Qwen3 80B Instruct", "A"),
    ("qwen/qwen2.5-coder-32b-instruct", "Qwen2.5 Coder 32B", "A"),
    ("minimaxai/minimax-m2", "MiniMax M2", "A"),
    ("mistralai/mistral-medium-3-instruct", "Mistral Medium 3", "A"),
    ("mistralai/magistral-small-2506", "Magistral Small", "A"),
    # B-tier
    ("meta/llama-4-maverick-17b-128e-instruct", "Llama 4 Maverick", "B"),
    ("meta/llama-4-scout-17b-16e-instruct", "Llama 4 Scout", "B"),
    ("meta/llama-3.1-405b-instruct", "Llama 3.1 405B", "B"),
    ("meta/llama-3.3-70b-instruct", "Llama 3.3 70B", "B"),
    ("nvidia/llama-3.3-nemotron-super-49b-v1.5", "Nemotron Super 49B", "B"),
    ("deepseek-ai/deepseek-r1-distill-qwen-32b", "R1 Distill 32B", "B"),
    ("deepseek-ai/deepseek-r1-distill-llama-8b", "R1 Distill 8B", "B"),
    ("igenius/colosseum_355b_instruct_16k", "Colosseum 355B", "B"),
    ("openai/gpt-oss-120b", "GPT OSS 120B", "B"),
    ("openai/gpt-oss-20b", "GPT OSS 20B", "B"),
    ("stockmark/stockmark-2-100b-instruct", "Stockmark 100B", "B"),
    # C-tier
    ("deepseek-ai/deepseek-r1-distill-qwen-7b", "R1 Distill 7B", "C"),
    ("bytedance/seed-oss-36b-instruct", "Seed OSS 36B", "C"),
    ("stepfun-ai/step-3.5-flash", "Step 3.5 Flash", "C"),
    ("mistralai/mixtral-8x22b-instruct-v0.1", "Mixtral 8x22B", "C"),
    ("mistralai/ministral-14b-instruct-2512", "Ministral 14B", "C"),
    ("ibm/granite-34b-code-instruct", "Granite 34B Code", "C"),
    ("google/gemma-2-9b-it", "Gemma 2 9B", "C"),
    ("microsoft/phi-3.5-mini-instruct", "Phi 3.5 Mini", "C"),
    ("microsoft/phi-4-mini-instruct", "Phi 4 Mini", "C"),
)


def parse_tiers(raw: Optional[str]) -> Optional[List[str]]:
    """Parse a comma separated tier selection such as "S,a".

    Returns None when no selection was given. Raises ValueError on an empty
    selection or unknown tier letters.
    """
    if raw is None:
        return None
    tiers = [t.strip().upper() for t in raw.split(",") if t.strip()]
    if not tiers:
        raise ValueError("--tier requires a value, e.g. --tier S or --tier S,A")
    invalid = [t for t in tiers if t not in TIERS]
    if invalid:
        raise ValueError(f"Unknown tier(s): {', '.join(invalid)}. Valid tiers: {', '.join(TIERS)}")
    return tiers


def filter_by_tier(entries: Iterable, tiers: Optional[Sequence[str]]) -> List:
    """Keep entries whose ``tier`` is selected; no selection keeps everything."""
    items = list(entries)
    if tiers is None:
        return items
    selected = [e for e in items if e.tier in tiers]
    if not selected:
        raise ValueError(f"No models found for tier(s): {', '.join(tiers)}")
    return selected
