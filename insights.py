from __future__ import annotations

import json
import logging
import re
from typing import Optional, Protocol

import google.generativeai as genai

from schemas import MonthlyStats


logger = logging.getLogger(__name__)

FALLBACK_INSIGHTS = [
    "Your highest expense category this month might need attention.",
    "Consider setting up a budget for better financial management.",
    "Track your recurring expenses to identify potential savings.",
]

_FENCE_RE = re.compile(r"```(?:json)?\n?")


class InsightUnavailable(RuntimeError):
    pass


class InsightGenerator(Protocol):
    def generate(self, month: str, stats: MonthlyStats) -> list[str]:
        ...


def build_prompt(month: str, stats: MonthlyStats) -> str:
    categories = ", ".join(
        f"{category}: ${amount}" for category, amount in stats.by_category.items()
    )
    return f"""
    Analyze this financial data and provide 3 concise, actionable insights.
    Focus on spending patterns and practical advice.
    Keep it friendly and conversational.

    Financial Data for {month}:
    - Total Income: ${stats.total_income}
    - Total Expenses: ${stats.total_expenses}
    - Net Income: ${stats.net_income}
    - Expense Categories: {categories or "none"}

    Format the response as a JSON array of strings, like this:
    ["insight 1", "insight 2", "insight 3"]
    """


def parse_insights(text: str) -> list[str]:
    cleaned = _FENCE_RE.sub("", text).strip()
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise InsightUnavailable("Insight response is not valid JSON") from exc
    if not isinstance(payload, list) or not payload:
        raise InsightUnavailable("Insight response is not a non-empty list")
    return [str(item) for item in payload]


class GeminiInsightGenerator:
    def __init__(
        self, api_key: Optional[str], model_name: str, timeout_secs: float
    ) -> None:
        self.api_key = api_key
        self.model_name = model_name
        self.timeout_secs = timeout_secs
        self._model: Optional[genai.GenerativeModel] = None

    @property
    def model(self) -> genai.GenerativeModel:
        if not self.api_key:
            raise InsightUnavailable("No Gemini API key configured")
        if self._model is None:
            genai.configure(api_key=self.api_key)
            self._model = genai.GenerativeModel(model_name=self.model_name)
        return self._model

    def generate(self, month: str, stats: MonthlyStats) -> list[str]:
        response = self.model.generate_content(
            build_prompt(month, stats),
            request_options={"timeout": self.timeout_secs},
        )
        return parse_insights(response.text)


def insights_or_fallback(
    generator: InsightGenerator, month: str, stats: MonthlyStats
) -> list[str]:
    try:
        return generator.generate(month, stats)
    except Exception as exc:
        logger.warning(f"insights_fallback: month={month} error={exc}")
        return list(FALLBACK_INSIGHTS)
