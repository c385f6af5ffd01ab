# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Variable Interpolation

Resolves {{token}} placeholders against a run's variables and prior
node outputs. Unresolved tokens are left in place, so partially filled
contexts always render.
"""

import re
from typing import List, Iterable

from .context import ExecutionContext
from .models import FlowNode

TOKEN_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

# Node data fields scanned for user-facing variables
TEMPLATE_FIELDS = ("systemPrompt", "userPrompt", "content")


def _resolve(match: "re.Match", context: ExecutionContext) -> str:
    token = match.group(1).strip()

    if token in context.variables:
        return context.variables[token]

    # node_id or node_id.field -> that node's whole output
    node_id = token.split(".", 1)[0]
    result = context.results.get(node_id)
    if result is not None:
        return result.output

    return match.group(0)


def substitute(template: str, context: ExecutionContext) -> str:
    """
    Replace every {{token}} in template.

    Resolution order per token (whitespace-trimmed):
    1. context.variables[token]
    2. context.results[prefix].output, where prefix is the token up to the first "."
    3. the token text, unchanged
    """
    if not template:
        return template or ""
    return TOKEN_PATTERN.sub(lambda m: _resolve(m, context), template)


def extract_tokens(text: str) -> List[str]:
    """All tokens in text, in order, duplicates kept"""
    if not text:
        return []
    return [m.group(1).strip() for m in TOKEN_PATTERN.finditer(text)]


def unique_tokens(text: str) -> List[str]:
    """Tokens in first-seen order without duplicates"""
    return list(dict.fromkeys(extract_tokens(text)))


def has_tokens(text: str) -> bool:
    return bool(text) and TOKEN_PATTERN.search(text) is not None


def collect_flow_variables(nodes: Iterable[FlowNode]) -> List[str]:
    """
    Variables referenced anywhere in a flow's prompts and notes.

    Tokens naming a node in the flow (directly or as `node.field`) are
    outputs, not inputs, and are left out.
    """
    nodes = list(nodes)
    node_ids = {node.id for node in nodes}
    output_names = {node.output_variable for node in nodes}

    seen = []
    for node in nodes:
        for field in TEMPLATE_FIELDS:
            value = node.data.get(field)
            if not isinstance(value, str):
                continue
            for token in extract_tokens(value):
                prefix = token.split(".", 1)[0].split("[", 1)[0]
                if token.isdigit() or prefix in node_ids or prefix in output_names:
                    continue
                if token not in seen:
                    seen.append(token)
    return seen
