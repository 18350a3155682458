"""正则日期提取器

低优先级的第二提取器：只用于填补分类器留空的字段，或把自由文本日期
归一化为 ISO 格式，从不覆盖分类器的结果。
"""

import re
from datetime import date

_MONTHS = "jan feb mar apr may jun jul aug sep oct nov dec".split()
_MONTH = (
    r"(Jan(?:uary)?|Feb(?:ruary)?|Mar(?:ch)?|Apr(?:il)?|May|June?|July?|Aug(?:ust)?"
    r"|Sep(?:t(?:ember)?)?|Oct(?:ober)?|Nov(?:ember)?|Dec(?:ember)?)(?:\.|\b)"
)
_DAY = r"(\d{1,2})(?:st|nd|rd|th)?"

# 按从具体到宽松排列；每项为 (pattern, 分组含义)，d/m/y 分别为日/月/年
_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b"), "ymd_numeric"),
    (re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b"), "dmy_numeric"),
    (re.compile(rf"\b{_DAY}\s+of\s+{_MONTH}\s+(\d{{4}})\b", re.IGNORECASE), "dmy"),
    (re.compile(rf"\b{_DAY}\s+of\s+{_MONTH}(?!\s*\d)", re.IGNORECASE), "dm"),
    (re.compile(rf"\b{_DAY}\s+{_MONTH},?\s+(\d{{4}})\b", re.IGNORECASE), "dmy"),
    (re.compile(rf"\b{_MONTH}\s+{_DAY},?\s+(\d{{4}})\b", re.IGNORECASE), "mdy"),
    (re.compile(rf"\b{_DAY}\s+{_MONTH}(?!\s*\d)", re.IGNORECASE), "dm"),
    (re.compile(rf"\b{_MONTH}\s+{_DAY}\b(?!\s*[:,]?\s*\d{{4}})", re.IGNORECASE), "md"),
]

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _month_index(name: str) -> int:
    return _MONTHS.index(name[:3].lower()) + 1


def _build(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _roll_forward(month: int, day: int, today: date) -> date | None:
    """无年份日期：今年已过则视为明年"""
    candidate = _build(today.year, month, day)
    if candidate is None:
        return _build(today.year + 1, month, day)
    if candidate < today:
        return _build(today.year + 1, month, day)
    return candidate


def extract_date(text: str | None, today: date | None = None) -> date | None:
    """从文本中提取第一个可识别的日期

    Args:
        text: 文本
        today: 参考日期（无年份日期按此滚动到未来）

    Returns:
        date，未识别时返回 None
    """
    if not text:
        return None
    today = today or date.today()

    for pattern, kind in _PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        groups = match.groups()
        if kind == "ymd_numeric":
            result = _build(int(groups[0]), int(groups[1]), int(groups[2]))
        elif kind == "dmy_numeric":
            day, month = int(groups[0]), int(groups[1])
            if month > 12:
                day, month = month, day
            result = _build(int(groups[2]), month, day)
        elif kind == "dmy":
            result = _build(int(groups[2]), _month_index(groups[1]), int(groups[0]))
        elif kind == "mdy":
            result = _build(int(groups[2]), _month_index(groups[0]), int(groups[1]))
        elif kind == "dm":
            result = _roll_forward(_month_index(groups[1]), int(groups[0]), today)
        else:
            result = _roll_forward(_month_index(groups[0]), int(groups[1]), today)
        if result is not None:
            return result
    return None


def normalize_date_value(value: str | None, today: date | None = None) -> str | None:
    """把日期值归一化为 ISO 字符串

    已是 ISO 格式的原样返回；可识别的自由文本转换为 ISO；
    无法识别的保留原文；空值返回 None。
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    if _ISO_DATE.match(value) and _build(*map(int, value.split("-"))) is not None:
        return value
    parsed = extract_date(value, today)
    return parsed.isoformat() if parsed else value


def parse_iso_date(value: str | None) -> date | None:
    """严格解析 ISO 日期，失败返回 None"""
    if not value or not _ISO_DATE.match(value.strip()):
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError:
        return None
