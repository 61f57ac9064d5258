"""Deterministic rule-based intent classification."""

import re

from expense_assistant.models.assistant import Intent

AMOUNT_PATTERN = re.compile(r"\b\d+(\.\d+)?\b")
EXPENSE_PATTERN = re.compile(r"(expense|spent|spend|cost|price|bought|purchase|pay|paid)")
ADD_PATTERN = re.compile(r"\b(add|record|create|log)")
FIRST_PERSON_SPEND_PATTERN = re.compile(r"\bi (bought|spent|paid)\b")
UPDATE_PATTERN = re.compile(r"\b(update|edit|change|modify)")
DELETE_PATTERN = re.compile(r"\b(delete|remove)")
SUMMARY_PATTERN = re.compile(r"(summary|total|how much|spent this month|month|weekly|daily)")
CATEGORY_PATTERN = re.compile(r"(categor(y|ies)|food|travel|shopping|rent|grocery|groceries)")
COMPARISON_PATTERN = re.compile(r"(compare|comparison|\bvs\b|versus)")
BUDGET_PATTERN = re.compile(r"(budget|\blimit\b|\bcap\b)")
SET_PATTERN = re.compile(r"\bset\b")
CURRENCY_NUMBER_PATTERN = re.compile(r"((rs\.?|inr|₹|\$)\s*\d+|\d+\s*(rs\b|inr\b|₹|rupees))")
LARGE_NUMBER_PATTERN = re.compile(r"\b\d{3,}\b")
NAME_CHANGE_PATTERN = re.compile(
    r"(call you|call yourself|your name (is|to|be|should be|will be)"
    r"|name you|rename you|set your name|change your name|i will call you|i'll call you)"
)


class IntentFeatures:
    """Boolean predicates evaluated over a lower-cased message."""

    def __init__(self, text: str):
        msg = (text or "").lower()
        self.has_amount = bool(AMOUNT_PATTERN.search(msg))
        self.has_expense = bool(EXPENSE_PATTERN.search(msg))
        self.has_add = bool(ADD_PATTERN.search(msg))
        self.has_first_person_spend = bool(FIRST_PERSON_SPEND_PATTERN.search(msg))
        self.has_update = bool(UPDATE_PATTERN.search(msg))
        self.has_delete = bool(DELETE_PATTERN.search(msg))
        self.has_summary = bool(SUMMARY_PATTERN.search(msg))
        self.has_category = bool(CATEGORY_PATTERN.search(msg))
        self.has_comparison = bool(COMPARISON_PATTERN.search(msg))
        self.has_budget = bool(BUDGET_PATTERN.search(msg))
        self.has_set = bool(SET_PATTERN.search(msg))
        self.has_currency_number = bool(
            CURRENCY_NUMBER_PATTERN.search(msg) or LARGE_NUMBER_PATTERN.search(msg)
        )
        self.wants_name_change = bool(NAME_CHANGE_PATTERN.search(msg))


def classify_intent(text: str) -> Intent:
    """Map free text to exactly one intent.

    Rules are checked in a fixed priority order; earlier rules shadow later
    ones when keyword sets overlap.
    """
    f = IntentFeatures(text)

    if (f.has_add or f.has_first_person_spend) and f.has_expense and f.has_amount:
        return Intent.ADD_EXPENSE
    if f.has_update and f.has_expense:
        return Intent.UPDATE_EXPENSE
    if f.has_delete and f.has_expense:
        return Intent.DELETE_EXPENSE
    if f.has_budget and f.has_currency_number and (f.has_add or f.has_set):
        return Intent.SET_BUDGET
    if f.has_budget and not f.has_currency_number:
        return Intent.GET_BUDGET
    if f.wants_name_change:
        return Intent.SET_ASSISTANT_NAME
    if f.has_summary:
        return Intent.SHOW_SUMMARY
    if f.has_category and (f.has_summary or f.has_comparison):
        return Intent.CATEGORY_ANALYSIS
    if f.has_expense:
        return Intent.GENERAL_QUESTION
    return Intent.UNKNOWN
