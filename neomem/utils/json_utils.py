"""
JSON utilities for cleaning LLM responses.
"""

import json
from typing import Any, Optional


def clean_json_response(response: str) -> str:
    """Strip markdown code fences from an LLM response.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned JSON string
    """
    response = (response or '').strip()

    if response.startswith('```json'):
        response = response[7:]
    elif response.startswith('```'):
        response = response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()


def parse_json_object(response: str) -> Optional[Any]:
    """Parse the single JSON value carried by an LLM response.

    Falls back to the outermost ``{...}`` span when the model wraps the object in prose.

    Args:
        response: Raw LLM response

    Returns:
        Parsed JSON value, or None if the response holds no valid JSON
    """
    cleaned = clean_json_response(response)
    if not cleaned:
        return None

    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start == -1 or end <= start:
        return None
    try:
        return json.loads(cleaned[start:end + 1])
    except json.JSONDecodeError:
        return None
