"""Extraction of dates, amounts, categories and keywords from chat messages.

All functions are pure: they take the message (and a reference ``now`` where
time matters) and return plain values or pydantic records with optional
fields left as None when the message says nothing about them.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Literal, Optional

from pydantic import BaseModel

from expense_assistant.models.finance import ExpenseCategory, ExpenseFilters, Period

NUMBER = r"\d[\d,]*(?:\.\d+)?"
ISO_DATE = r"\d{4}-\d{2}-\d{2}"

ISO_DATE_PATTERN = re.compile(ISO_DATE)
CURRENCY_PREFIX_PATTERN = re.compile(rf"(?:₹|\brs\.?|\binr|\$)\s*({NUMBER})", re.IGNORECASE)
CURRENCY_SUFFIX_PATTERN = re.compile(rf"({NUMBER})\s*(?:₹|rs\b|inr\b|rupees|dollars|bucks)", re.IGNORECASE)
BARE_NUMBER_PATTERN = re.compile(rf"(?<![\w.])({NUMBER})(?![\w-])")

RANGE_PATTERN = re.compile(rf"(?:from|between)\s+({ISO_DATE})\s+(?:to|and|until|-)\s+({ISO_DATE})", re.IGNORECASE)
SINCE_PATTERN = re.compile(rf"(?:since|after|from)\s+({ISO_DATE})", re.IGNORECASE)
UNTIL_PATTERN = re.compile(rf"(?:until|before|till|up to)\s+({ISO_DATE})", re.IGNORECASE)
LAST_N_DAYS_PATTERN = re.compile(r"(?:last|past|previous)\s+(\d+)\s+days?", re.IGNORECASE)
MONTHS_AGO_PATTERN = re.compile(r"(\d+)\s+months?\s+ago", re.IGNORECASE)

MIN_AMOUNT_PATTERN = re.compile(rf"(?:over|above|more than|greater than|at least)\s+(?:₹|rs\.?|inr|\$)?\s*({NUMBER})", re.IGNORECASE)
MAX_AMOUNT_PATTERN = re.compile(rf"(?:under|below|less than|at most|cheaper than)\s+(?:₹|rs\.?|inr|\$)?\s*({NUMBER})", re.IGNORECASE)
AMOUNT_BETWEEN_PATTERN = re.compile(rf"between\s+(?:₹|rs\.?|inr|\$)?\s*({NUMBER})\s+and\s+(?:₹|rs\.?|inr|\$)?\s*({NUMBER})", re.IGNORECASE)

TOP_N_PATTERN = re.compile(r"(?:top|bottom)\s+(\d+)|(\d+)\s+(?:top|biggest|largest|highest|lowest|smallest)", re.IGNORECASE)
ASCENDING_PATTERN = re.compile(r"\b(least|lowest|smallest|bottom|cheapest)\b", re.IGNORECASE)

QUOTED_PATTERN = re.compile(r"[\"“]([^\"”]{2,40})[\"”]")
KEYWORD_PATTERNS = [
    re.compile(r"(?:containing|matching|named|called|mentioning|with)\s+([a-z][\w-]*)", re.IGNORECASE),
    re.compile(r"(?:find|search|show|list)(?:\s+me)?(?:\s+my|\s+all)?\s+([a-z][\w-]*)\s+(?:expenses|purchases|spending|payments)", re.IGNORECASE),
    re.compile(r"(?:search|look)\s+(?:for\s+)?([a-z][\w-]*)", re.IGNORECASE),
    re.compile(r"\bfor\s+([a-z][\w-]*)", re.IGNORECASE),
]
KEYWORD_STOPWORDS = {
    "all", "my", "me", "the", "a", "an", "recent", "latest", "big", "large", "small",
    "expenses", "expense", "purchases", "spending", "payments", "this", "last", "month",
    "week", "today", "yesterday", "over", "under", "above", "below", "between", "me",
    "for", "amount", "items", "anything", "everything", "stuff",
}

ASSISTANT_NAME_PATTERN = re.compile(
    r"(?:call you|call yourself|name you|rename you|"
    r"your name (?:is|to|be|should be|will be)|(?:set|change) your name(?:\s+to|\s+as)?)"
    r"\s+(?:to\s+|as\s+)?[\"'“]?([A-Za-z][\w'-]*)",
    re.IGNORECASE,
)
NAME_REPLY_PATTERN = re.compile(r"^[\"'“]?([A-Za-z][\w'-]*(?:\s+[A-Za-z][\w'-]*){0,2})[\"'”]?[.!?]*$")

ITEM_PATTERNS = [
    re.compile(r"\bbought\s+(?:a\s+|an\s+|some\s+|the\s+)?([a-z][a-z\s'-]*?)\s+(?:for|at|worth)\b", re.IGNORECASE),
    re.compile(r"\b(?:on|for)\s+(?:a\s+|an\s+|some\s+|the\s+|my\s+)?([a-z][a-z\s'-]*?)(?=\s+(?:for|on|at|today|yesterday|this|last)\b|\s*[\d₹$]|[.,!?]|$)", re.IGNORECASE),
    re.compile(r"\bexpense\s+(?:of\s+|for\s+)?([a-z][a-z\s'-]*?)(?=\s*[\d₹$]|\s+(?:for|on|at)\b|[.,!?]|$)", re.IGNORECASE),
]

CATEGORY_KEYWORDS = {
    ExpenseCategory.BREAKFAST: ("breakfast",),
    ExpenseCategory.LUNCH: ("lunch",),
    ExpenseCategory.DINNER: ("dinner",),
    ExpenseCategory.SNACKS: ("snack", "snacks"),
    ExpenseCategory.DRINKS: ("drink", "drinks"),
    ExpenseCategory.GROCERIES: ("grocery", "groceries"),
    ExpenseCategory.TRAVEL: ("travel", "transport"),
    ExpenseCategory.SHOPPING: ("shopping",),
    ExpenseCategory.RENT: ("rent",),
    ExpenseCategory.UTILITIES: ("utilities", "utility", "bills"),
    ExpenseCategory.ENTERTAINMENT: ("entertainment",),
}

ITEM_CATEGORY_HINTS = {
    ExpenseCategory.DRINKS: ("coffee", "tea", "juice", "beer", "soda"),
    ExpenseCategory.SNACKS: ("chips", "samosa", "biscuit", "cookie", "chocolate"),
    ExpenseCategory.GROCERIES: ("milk", "vegetables", "fruits", "bread", "eggs", "rice"),
    ExpenseCategory.TRAVEL: ("taxi", "uber", "cab", "bus", "train", "flight", "fuel", "petrol", "metro"),
    ExpenseCategory.SHOPPING: ("shoes", "clothes", "shirt", "jeans", "amazon"),
    ExpenseCategory.UTILITIES: ("electricity", "water bill", "internet", "phone bill", "wifi"),
    ExpenseCategory.ENTERTAINMENT: ("movie", "netflix", "concert", "game", "spotify"),
}


class ParsedExpense(BaseModel):
    """Best-effort expense fields read from a free-text message."""

    item: Optional[str] = None
    amount: Optional[float] = None
    category: Optional[ExpenseCategory] = None
    date: Optional[datetime] = None


def _to_float(raw: str) -> float:
    return float(raw.replace(",", ""))


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _parse_iso_date(raw: str) -> datetime:
    return datetime.strptime(raw, "%Y-%m-%d").replace(tzinfo=timezone.utc)


def _utcnow(now: Optional[datetime]) -> datetime:
    return now or datetime.now(timezone.utc)


def month_bounds(now: datetime, offset: int = 0) -> Period:
    """First instant of the month ``offset`` months from ``now`` to the first of the next."""
    month_index = now.year * 12 + (now.month - 1) + offset
    start = now.replace(
        year=month_index // 12,
        month=month_index % 12 + 1,
        day=1,
        hour=0,
        minute=0,
        second=0,
        microsecond=0,
    )
    next_index = month_index + 1
    end = start.replace(year=next_index // 12, month=next_index % 12 + 1)
    return Period(start=start, end=end)


def parse_amount(text: str) -> Optional[float]:
    """Amount mentioned in a message, preferring currency-marked numbers."""
    without_dates = ISO_DATE_PATTERN.sub(" ", text or "")
    for pattern in (CURRENCY_PREFIX_PATTERN, CURRENCY_SUFFIX_PATTERN, BARE_NUMBER_PATTERN):
        match = pattern.search(without_dates)
        if match:
            try:
                return _to_float(match.group(1))
            except ValueError:
                continue
    return None


def parse_category(text: str) -> Optional[ExpenseCategory]:
    """Category named explicitly in the message."""
    lower = (text or "").lower()
    for category, keywords in CATEGORY_KEYWORDS.items():
        for keyword in keywords:
            if re.search(rf"\b{re.escape(keyword)}\b", lower):
                return category
    return None


def infer_category(item: Optional[str]) -> Optional[ExpenseCategory]:
    """Category suggested by an item name ("coffee" -> drinks)."""
    if not item:
        return None
    explicit = parse_category(item)
    if explicit:
        return explicit
    lower = item.lower()
    for category, hints in ITEM_CATEGORY_HINTS.items():
        if any(hint in lower for hint in hints):
            return category
    return None


def parse_date_range(
    text: str, now: Optional[datetime] = None
) -> tuple[Optional[datetime], Optional[datetime]]:
    """Half-open [start, end) range described by the message, either end may be None."""
    now = _utcnow(now)
    lower = (text or "").lower()
    today = _start_of_day(now)

    match = RANGE_PATTERN.search(lower)
    if match:
        start = _parse_iso_date(match.group(1))
        end = _parse_iso_date(match.group(2)) + timedelta(days=1)
        return start, end

    start = end = None
    match = SINCE_PATTERN.search(lower)
    if match:
        start = _parse_iso_date(match.group(1))
    match = UNTIL_PATTERN.search(lower)
    if match:
        end = _parse_iso_date(match.group(1))
    if start or end:
        return start, end

    match = LAST_N_DAYS_PATTERN.search(lower)
    if match:
        return now - timedelta(days=int(match.group(1))), now

    if re.search(r"\btoday\b", lower):
        return today, today + timedelta(days=1)
    if re.search(r"\byesterday\b", lower):
        return today - timedelta(days=1), today
    if re.search(r"\bthis week\b", lower):
        monday = today - timedelta(days=today.weekday())
        return monday, monday + timedelta(days=7)
    if re.search(r"\b(last|previous|past) week\b", lower):
        monday = today - timedelta(days=today.weekday())
        return monday - timedelta(days=7), monday
    if re.search(r"\b(last|previous) month\b", lower):
        period = month_bounds(now, -1)
        return period.start, period.end
    if re.search(r"\bthis month\b", lower):
        period = month_bounds(now, 0)
        return period.start, period.end
    if re.search(r"\bthis year\b", lower):
        start = today.replace(month=1, day=1)
        return start, start.replace(year=start.year + 1)

    return None, None


def has_explicit_range(text: str, now: Optional[datetime] = None) -> bool:
    """True when the message names a range other than a whole calendar month."""
    lower = (text or "").lower()
    if re.search(r"\b(this|last|previous) month\b", lower) and not RANGE_PATTERN.search(lower):
        return False
    start, end = parse_date_range(text, now)
    return start is not None or end is not None


def parse_amount_bounds(text: str) -> tuple[Optional[float], Optional[float]]:
    """(min_amount, max_amount) from phrases like "over 500" or "between 100 and 300"."""
    lower = ISO_DATE_PATTERN.sub(" ", (text or "").lower())
    match = AMOUNT_BETWEEN_PATTERN.search(lower)
    if match:
        low, high = sorted((_to_float(match.group(1)), _to_float(match.group(2))))
        return low, high
    low = high = None
    match = MIN_AMOUNT_PATTERN.search(lower)
    if match:
        low = _to_float(match.group(1))
    match = MAX_AMOUNT_PATTERN.search(lower)
    if match:
        high = _to_float(match.group(1))
    return low, high


def _is_category_word(word: str) -> bool:
    return any(word in keywords for keywords in CATEGORY_KEYWORDS.values())


def parse_keyword(text: str) -> Optional[str]:
    """Free-text search term: quoted text first, then a few phrasing patterns."""
    match = QUOTED_PATTERN.search(text or "")
    if match:
        return match.group(1).strip()
    for pattern in KEYWORD_PATTERNS:
        for match in pattern.finditer(text or ""):
            word = match.group(1).lower()
            if word in KEYWORD_STOPWORDS or _is_category_word(word):
                continue
            return word
    return None


def parse_filters(text: str, now: Optional[datetime] = None) -> ExpenseFilters:
    """All search filters the message mentions."""
    start, end = parse_date_range(text, now)
    min_amount, max_amount = parse_amount_bounds(text)
    return ExpenseFilters(
        start=start,
        end=end,
        min_amount=min_amount,
        max_amount=max_amount,
        category=parse_category(text),
        keyword=parse_keyword(text),
    )


def parse_top_n(text: str, default: int = 3, maximum: int = 20) -> int:
    match = TOP_N_PATTERN.search(text or "")
    if not match:
        return default
    value = int(match.group(1) or match.group(2))
    return max(1, min(maximum, value))


def parse_direction(text: str) -> Literal["asc", "desc"]:
    return "asc" if ASCENDING_PATTERN.search(text or "") else "desc"


def parse_month_offset(text: str) -> int:
    """0 for this month, -1 for last month, -N for "N months ago"."""
    lower = (text or "").lower()
    match = MONTHS_AGO_PATTERN.search(lower)
    if match:
        return -int(match.group(1))
    if re.search(r"\b(last|previous) month\b", lower):
        return -1
    return 0


def extract_assistant_name(text: str) -> Optional[str]:
    """Name following a naming phrase ("set your name to Nova" -> "Nova")."""
    match = ASSISTANT_NAME_PATTERN.search(text or "")
    if not match:
        return None
    return match.group(1).strip("'-") or None


def parse_name_reply(text: str) -> Optional[str]:
    """A bare reply to "what name would you like to give me?"."""
    name = extract_assistant_name(text)
    if name:
        return name
    match = NAME_REPLY_PATTERN.match((text or "").strip())
    return match.group(1).strip() if match else None


def parse_expense_from_text(text: str, now: Optional[datetime] = None) -> ParsedExpense:
    """Expense fields from messages like "I spent 120 on lunch"."""
    now = _utcnow(now)
    item = None
    for pattern in ITEM_PATTERNS:
        match = pattern.search(text or "")
        if match:
            candidate = match.group(1).strip()
            if candidate and candidate.lower() not in KEYWORD_STOPWORDS:
                item = candidate
                break

    category = parse_category(text) or infer_category(item)
    if item is None and category is not None:
        item = category.value

    date = None
    if re.search(r"\byesterday\b", (text or "").lower()):
        date = now - timedelta(days=1)

    return ParsedExpense(
        item=item,
        amount=parse_amount(text),
        category=category,
        date=date,
    )
