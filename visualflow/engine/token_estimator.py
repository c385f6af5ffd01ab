# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Token pre-flight checks.

Character-based estimate (~4 characters per token) compared against
model context windows from the `models` section of the YAML config.
Catches prompts that obviously will not fit before a flow is sent out.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from visualflow.core.config import get_config
from .models import FlowNode, NodeType
from .context import ExecutionContext
from .interpolation import substitute

CHARS_PER_TOKEN = 4
MAX_SUGGESTIONS = 3

LLM_NODE_TYPES = (NodeType.LLM_PROVIDER, NodeType.TOOL_AGENT)

ModelCatalog = Dict[str, Dict[str, int]]


@dataclass
class ContextFit:
    fits: bool
    estimated_tokens: int
    limit: int
    suggestions: List[str] = field(default_factory=list)


@dataclass
class TokenLimitViolation:
    node_id: str
    node_type: str
    estimated_tokens: int
    limit: int
    model: str
    suggestions: List[str] = field(default_factory=list)


def estimate_token_count(text: Optional[str]) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def check_context_fit(
    provider: str,
    model: Optional[str],
    text: str,
    catalog: Optional[ModelCatalog] = None
) -> ContextFit:
    """
    Check whether text fits the model's context window.

    Unknown models always fit. When the text doesn't fit, up to three
    larger models from the same provider are suggested, smallest first.
    """
    catalog = get_config().model_catalog if catalog is None else catalog
    models = catalog.get(provider) or {}
    limit = models.get(model or "")
    if not limit:
        return ContextFit(fits=True, estimated_tokens=0, limit=0)

    estimated = estimate_token_count(text)
    if estimated <= limit:
        return ContextFit(fits=True, estimated_tokens=estimated, limit=limit)

    larger = sorted(
        ((name, window) for name, window in models.items() if window > limit),
        key=lambda item: item[1]
    )[:MAX_SUGGESTIONS]
    return ContextFit(
        fits=False,
        estimated_tokens=estimated,
        limit=limit,
        suggestions=[f"{name} ({window:,} tokens)" for name, window in larger],
    )


def validate_flow_token_limits(
    nodes: Iterable[FlowNode],
    variables: Optional[Dict[str, str]] = None,
    catalog: Optional[ModelCatalog] = None
) -> List[TokenLimitViolation]:
    """Every LLM node whose resolved prompts exceed its model's window"""
    context = ExecutionContext(variables)
    violations: List[TokenLimitViolation] = []

    for node in nodes:
        if node.type not in LLM_NODE_TYPES:
            continue

        data = node.data
        prompt = "\n".join(
            substitute(data.get(key) or "", context)
            for key in ("systemPrompt", "userPrompt", "prompt")
            if data.get(key)
        )
        provider = data.get("provider") or ""
        fit = check_context_fit(provider, data.get("model"), prompt, catalog)
        if not fit.fits:
            violations.append(TokenLimitViolation(
                node_id=node.id,
                node_type=node.type.value,
                estimated_tokens=fit.estimated_tokens,
                limit=fit.limit,
                model=data.get("model") or "",
                suggestions=fit.suggestions,
            ))

    return violations
