# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Structured output handling.

Turns JSON/CSV node output into individually addressable variables:
objects become `name.field`, arrays become `name[i].field` or `name[i]`.
"""

import csv
import io
import json
import re
from typing import Any, Dict, Optional

from .models import ExecutionResult, OutputFormat
from .exceptions import StructuredOutputParseError

FENCE_PATTERN = re.compile(r"^```[A-Za-z0-9_-]*\s*", re.MULTILINE)


def strip_code_fences(text: str) -> str:
    """Remove Markdown code fences (```json, ```csv, bare ```)"""
    return FENCE_PATTERN.sub("", text.strip()).strip()


def stringify(value: Any) -> str:
    """Render a parsed value the way it reads in a prompt"""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_json_output(node_id: str, text: str) -> Any:
    try:
        return json.loads(strip_code_fences(text))
    except json.JSONDecodeError as e:
        raise StructuredOutputParseError(node_id, OutputFormat.JSON.value, str(e))


def parse_csv_output(node_id: str, text: str) -> list:
    """Header row plus records -> list of dicts"""
    body = strip_code_fences(text)
    if not body:
        raise StructuredOutputParseError(node_id, OutputFormat.CSV.value, "empty output")

    try:
        reader = csv.DictReader(io.StringIO(body))
        if not reader.fieldnames:
            raise StructuredOutputParseError(node_id, OutputFormat.CSV.value, "missing header row")
        return [
            {key.strip(): (value or "").strip() for key, value in row.items() if key is not None}
            for row in reader
        ]
    except csv.Error as e:
        raise StructuredOutputParseError(node_id, OutputFormat.CSV.value, str(e))


def flatten(name: str, data: Any) -> Dict[str, str]:
    """
    Flatten parsed data into variables.

    Only the first level is expanded; nested values are JSON-encoded.
    Scalars and empty values produce nothing.
    """
    variables: Dict[str, str] = {}

    if isinstance(data, dict):
        for key, value in data.items():
            variables[f"{name}.{key}"] = stringify(value)
    elif isinstance(data, list):
        for index, item in enumerate(data):
            if isinstance(item, dict):
                for key, value in item.items():
                    variables[f"{name}[{index}].{key}"] = stringify(value)
            else:
                variables[f"{name}[{index}]"] = stringify(item)

    return variables


def extract_structured_variables(
    node_id: str,
    output_variable: str,
    output_format: Optional[OutputFormat],
    result: ExecutionResult
) -> Dict[str, str]:
    """
    Variables derived from a successful structured-output node.

    Provider-supplied structured data wins over parsing the raw text.
    Raises StructuredOutputParseError when the text can't be parsed.
    """
    if output_format not in (OutputFormat.JSON, OutputFormat.CSV) or result.failed:
        return {}

    data = result.metadata.structured_data if result.metadata else None
    if data is None and result.output:
        if output_format == OutputFormat.JSON:
            data = parse_json_output(node_id, result.output)
        else:
            data = parse_csv_output(node_id, result.output)

    if not data:
        return {}
    return flatten(output_variable, data)
