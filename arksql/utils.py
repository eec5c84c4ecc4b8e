import uuid
import datetime
import decimal
import re
from typing import List, Optional

# The one fenced-block rule used both to pull SQL out of model output and to
# write corrected SQL back into a response.
SQL_FENCE_PATTERN = re.compile(r"```sql\n([\s\S]*?)\n```")
_FENCE_CLEANUP = re.compile(r"^```sql\n|^```\n|```$", re.MULTILINE)
# Labelled or bare fence, for model answers that may omit the language tag
_ANY_FENCE_PATTERN = re.compile(r"```(?:sql)?[ \t]*\n([\s\S]*?)\n?```", re.IGNORECASE)


def json_default(obj):
    """JSON serializer handling specific types and number formatting.

    Handles:
    - UUID -> str
    - datetime/date/time -> ISO format str
    - float representing whole number (e.g., 234.0) -> int (234)
    - Decimal representing whole number -> int
    - Other Decimal -> str (to preserve precision)
    """
    if isinstance(obj, uuid.UUID):
        return str(obj)
    if isinstance(obj, (datetime.datetime, datetime.date, datetime.time)):
        return obj.isoformat()
    if isinstance(obj, datetime.timedelta):
        return obj.total_seconds()
    if isinstance(obj, float) and obj.is_integer():
        return int(obj)
    if isinstance(obj, decimal.Decimal):
        if obj % 1 == 0:
            return int(obj)
        else:
            return str(obj)
    if isinstance(obj, (bytes, memoryview)):
        return bytes(obj).hex()
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def fence_sql(sql: str) -> str:
    return f"```sql\n{sql.strip()}\n```"


def extract_sql_blocks(text: str) -> List[str]:
    return [block.strip() for block in SQL_FENCE_PATTERN.findall(text or "")]


def extract_sql(text: str) -> Optional[str]:
    """First fenced SQL block in ``text``, or None."""
    blocks = extract_sql_blocks(text)
    return blocks[0] if blocks else None


def replace_sql(text: str, new_sql: str) -> str:
    """Swap the first fenced SQL block for ``new_sql`` (append one if there is none)."""
    if SQL_FENCE_PATTERN.search(text or ""):
        return SQL_FENCE_PATTERN.sub(lambda _: fence_sql(new_sql), text, count=1)
    return f"{text.rstrip()}\n\n{fence_sql(new_sql)}" if text else fence_sql(new_sql)


def clean_sql_code(sql_code: str) -> str:
    """The fenced statement when there is one, else the text with fences and leading prose stripped."""
    fenced = _ANY_FENCE_PATTERN.search(sql_code or "")
    if fenced and fenced.group(1).strip():
        return fenced.group(1).strip()
    cleaned = _FENCE_CLEANUP.sub("", sql_code or "").strip()
    upper = cleaned.upper()
    if not upper.startswith(("SELECT", "WITH", "EXPLAIN")):
        select_at = upper.find("SELECT")
        if select_at > 0:
            cleaned = cleaned[select_at:]
    return cleaned.strip()


def normalize_text(value: str) -> str:
    """Trim, collapse internal whitespace and lowercase."""
    return " ".join((value or "").split()).lower()
