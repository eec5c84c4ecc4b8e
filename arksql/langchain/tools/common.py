import json
from typing import Any

from arksql.utils import json_default


def tool_result(payload: Any) -> str:
    """Tool output as the JSON string the agent reads."""
    return json.dumps(payload, default=json_default)


def tool_error(error_type: str, message: str) -> str:
    return json.dumps({"error": {"type": error_type, "message": message}})
