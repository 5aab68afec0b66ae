"""文本清洗：LLM 输出去标签、预览截断，以及报告中空值的占位处理。"""

from __future__ import annotations

import re

# 模型有时会在开头加上 "Transition:" 之类的标签
_LEAD_LABEL_RE = re.compile(
    r"^\s*(?:\*\*)?(?:here(?:'|’)?s\s+(?:a|the|my)\s+transition|transition|lead[- ]?in)\b"
    r"\s*(?:\*\*)?\s*:\s*(?:\*\*)?\s*",
    re.IGNORECASE,
)


def sanitize_text(value: str | None, placeholder: str = "(not provided)") -> str:
    """若值为 None、空、或字面量 "undefined"/"null"，返回占位文案。"""
    if value is None:
        return placeholder
    s = value.strip() if isinstance(value, str) else str(value).strip()
    if not s or s.lower() in ("undefined", "null"):
        return placeholder
    return s


def strip_lead_in_label(text: str) -> str:
    """Drop a leading label and wrapping quotes from a generated transition."""
    s = _LEAD_LABEL_RE.sub("", (text or "").strip(), count=1).strip()
    if len(s) >= 2 and s[0] == s[-1] and s[0] in "\"'“”":
        s = s[1:-1].strip()
    elif len(s) >= 2 and s[0] == "“" and s[-1] == "”":
        s = s[1:-1].strip()
    return s


def preview(text: str, limit: int = 200) -> str:
    s = (text or "").strip()
    return s if len(s) <= limit else s[:limit] + "..."
