"""模型输出解析 -- 从自由文本中取出 JSON 对象

模型经常把 JSON 包在 ``` 代码块里，或在前后附带解释文字。
"""

import json
import re

from .exceptions import MalformedResponseError

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def _candidates(text: str):
    for match in _FENCE_RE.finditer(text):
        yield match.group(1).strip()
    yield text.strip()
    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end > start:
        yield text[start : end + 1]


def extract_json_object(text: str) -> dict:
    """提取第一个可解析的 JSON 对象

    依次尝试：代码块内容、整段文本、首个 "{" 到末个 "}" 之间的片段。

    Raises:
        MalformedResponseError: 没有任何候选能解析为 JSON 对象
    """
    for candidate in _candidates(text or ""):
        try:
            value = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(value, dict):
            return value
    raise MalformedResponseError("模型输出不包含 JSON 对象", content=text or "")
