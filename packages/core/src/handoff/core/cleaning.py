"""入站正文清洗与地址归一化

分类前先去掉引用回复块和签名，只保留发件人本次写下的内容。
"""

import re
from email.utils import parseaddr

# 引用块起始标记：从最早出现的标记处截断；标记位于正文开头时只去掉标记行本身
_QUOTE_MARKERS = [
    re.compile(r"^On\s[^\n]*(?:\n[^\n]*)?\bwrote:[^\n]*$", re.MULTILINE),
    re.compile(r"^From:[^\n]*$", re.MULTILINE),
    re.compile(r"^-{3,}\s*Original Message\s*-{3,}[^\n]*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^-{3,}\s*Forwarded message\s*-{3,}[^\n]*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^Begin forwarded message:[^\n]*$", re.MULTILINE | re.IGNORECASE),
    re.compile(r"^_{10,}[^\n]*$", re.MULTILINE),
    re.compile(r"^={10,}[^\n]*$", re.MULTILINE),
]

# 签名起始行：单独成行的结束语、客户端签名或 "--" 分隔行
_SIGNATURE_START = re.compile(
    r"^[ \t]*(?:"
    r"(?:(?:best|kind|warm|warmest)[ \t]+)?regards|thanks|many thanks|thank you|cheers|sincerely"
    r")[ \t]*[,.!]?[ \t]*$"
    r"|^[ \t]*sent from\b[^\n]*$"
    r"|^[ \t]*get outlook\b[^\n]*$"
    r"|^--[ \t]*$",
    re.MULTILINE | re.IGNORECASE,
)

_EXCESS_NEWLINES = re.compile(r"\n{3,}")

# 外发消息中嵌入的任务引用：TASK-<ULID>
_TASK_REFERENCE = re.compile(r"\bTASK-([0-9A-HJKMNP-TV-Z]{26})\b")


def _first_quote_marker(text: str) -> re.Match[str] | None:
    matches = [m for marker in _QUOTE_MARKERS if (m := marker.search(text))]
    return min(matches, key=lambda m: m.start(), default=None)


def clean_email_body(body: str | None) -> str:
    """清洗邮件正文

    依次：截断引用块 -> 去掉 ">" 开头的行 -> 截断签名 -> 折叠 3 个以上换行 -> trim。

    Args:
        body: 原始纯文本正文

    Returns:
        清洗后的正文
    """
    if not body:
        return ""

    cleaned = body.replace("\r\n", "\n").replace("\r", "\n")

    while (header := _first_quote_marker(cleaned)) is not None:
        if header.start() > 0:
            cleaned = cleaned[: header.start()]
            break
        # 底部回复：引用头在最前面，回复写在引用之后
        cleaned = cleaned[header.end() :]

    cleaned = "\n".join(
        line for line in cleaned.split("\n") if not line.lstrip().startswith(">")
    )

    signature = _SIGNATURE_START.search(cleaned)
    if signature and cleaned[: signature.start()].strip():
        cleaned = cleaned[: signature.start()]

    cleaned = _EXCESS_NEWLINES.sub("\n\n", cleaned)
    return cleaned.strip()


def normalize_address(raw: str | None) -> str:
    """归一化邮件地址：去掉显示名和注释，转小写；无法解析时返回空串

    "Boss <Boss@X.com>" -> "boss@x.com"
    """
    if not raw:
        return ""
    value = raw.strip()
    if value.lower().startswith("mailto:"):
        value = value[len("mailto:") :]
    return parseaddr(value)[1].strip().lower()


def task_reference(task_id: str) -> str:
    """外发消息中嵌入的任务引用标记"""
    return f"TASK-{task_id}"


def extract_task_reference(text: str | None) -> str | None:
    """从正文中严格匹配任务引用

    只有恰好引用一个任务时才返回其 task_id；没有或出现多个不同引用时返回 None。
    """
    if not text:
        return None
    found = set(_TASK_REFERENCE.findall(text))
    if len(found) != 1:
        return None
    return found.pop()
