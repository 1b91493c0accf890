"""Prompt flows: one function per request/response contract.

Formula, analysis and chart outputs feed structured rendering, so they use the
defensive policy and come back as ``None`` when the model output does not fit
the schema. Explanations, enhanced prompts and chat answers are opaque text and
use the strict policy (``GenerationError`` on a bad output).
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from apps.api import config

from . import llm, profile
from .schemas import (
    AnalysisResult,
    ChartSpec,
    ChatAnswer,
    ChatMessage,
    EnhancedChartRequest,
    EnhancedPrompt,
    FormulaExplanation,
    FormulaResult,
)

LOGGER = logging.getLogger(__name__)

_JSON_ONLY = "Respond with a single JSON object only, with no commentary outside the JSON."


def _require_text(value: str, field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{field} cannot be empty")
    return value


# ---------------------------------------------------------------------------
# Formulas
# ---------------------------------------------------------------------------


def generate_formula(description: str) -> Optional[FormulaResult]:
    _require_text(description, "description")
    system = (
        "You are an expert in Excel and Google Sheets formulas. Given a description of a calculation, "
        "produce a correct, efficient Excel formula, the equivalent Google Sheets formula and a "
        "step-by-step explanation of how they work. " + _JSON_ONLY
    )
    user = (
        f"Description: {description}\n"
        'Schema: {"excelFormula": string, "googleSheetsFormula": string, "explanation": string}'
    )
    payload = llm.complete_json(system, user, temperature=0.2, max_output_tokens=800)
    return llm.validate_output(FormulaResult, payload)


def explain_formula(formula: str, formula_type: str) -> FormulaExplanation:
    _require_text(formula, "formula")
    system = (
        "You are an expert in both Excel and Google Sheets formulas. Explain step by step how the given "
        "formula works, in plain language for users of any experience level. " + _JSON_ONLY
    )
    user = f"Formula Type: {formula_type}\nFormula: {formula}\n" 'Schema: {"explanation": string}'
    payload = llm.complete_json(system, user, temperature=0.2, max_output_tokens=800)
    return llm.require_output(FormulaExplanation, payload)


def enhance_prompt(description: str) -> EnhancedPrompt:
    _require_text(description, "description")
    system = (
        "You turn vague spreadsheet requests into precise instructions for a formula generator. "
        "Clarify cell references and implied conditions, keep the user's intent, do not invent new "
        "requirements, and answer with one refined paragraph. " + _JSON_ONLY
    )
    user = f"Original description: {description}\n" 'Schema: {"enhancedDescription": string}'
    payload = llm.complete_json(system, user, temperature=0.3, max_output_tokens=400)
    return llm.require_output(EnhancedPrompt, payload)


# ---------------------------------------------------------------------------
# Data analysis
# ---------------------------------------------------------------------------


def analyze_data(csv_data: str, file_name: str) -> Optional[AnalysisResult]:
    """Run the EDA prompt and overlay deterministic statistics on the model's report."""
    _require_text(csv_data, "csvData")
    stats = profile.profile_csv(csv_data)
    truncated = llm.truncate_text(csv_data, config.ANALYSIS_MAX_CHARS)

    system = (
        "You are an expert data analyst. Produce a single JSON report for the uploaded dataset: "
        "fileName, columnCount, columnNames, an optional executiveSummary, summaryStats, missingValues and "
        "columnTypes (each {title, stats: [{columnName, value}]}), an optional correlationAnalysis "
        "{interpretation, matrix: [{column, values: [{column, value}]}]} when there are at least two numeric "
        "columns, an optional segmentationAnalysis {summary, segments: [{name, description}]} for user or "
        "customer data, and recommendedVisualizations: every insightful chart as {chartType (bar|pie|scatter|"
        "line|histogram|area|treemap), title, caption, data, config: {dataKey, indexKey}}. " + _JSON_ONLY
    )
    user = (
        f"File name: {file_name}\n"
        f"The dataset has {stats['rowCount']} rows.\n"
        f"CSV data:\n```csv\n{truncated}\n```"
    )
    payload = llm.complete_json(system, user, temperature=0.3, max_output_tokens=4000)
    return llm.validate_output(AnalysisResult, _merge_profile(payload, stats, file_name))


def _merge_profile(payload: Dict[str, Any], stats: Dict[str, Any], file_name: str) -> Dict[str, Any]:
    merged = dict(payload)
    merged["fileName"] = file_name
    merged["rowCount"] = stats["rowCount"]
    if stats["columnNames"]:
        merged["columnCount"] = stats["columnCount"]
        merged["columnNames"] = stats["columnNames"]
    if stats["missingValues"] or stats["columnTypes"]:
        merged["missingValues"] = {"title": "Missing Values", "stats": stats["missingValues"]}
        merged["columnTypes"] = {"title": "Column Types", "stats": stats["columnTypes"]}
    if not merged.get("summaryStats") and stats["summaryStats"]:
        merged["summaryStats"] = {"title": "Key Statistics", "stats": stats["summaryStats"]}
    return merged


def chat_with_data(
    csv_data: str,
    question: str,
    history: Optional[Sequence[ChatMessage]] = None,
) -> ChatAnswer:
    _require_text(csv_data, "csvData")
    _require_text(question, "question")
    context = list(history or [])[-config.CHAT_CONTEXT_MESSAGES:]
    truncated = llm.truncate_text(csv_data, config.CHAT_MAX_CHARS)

    system = (
        "You are an expert data analyst answering questions about an uploaded CSV file. Base every answer "
        "only on the CSV content; if the data cannot answer the question, say so. Keep answers concise. "
        + _JSON_ONLY
    )
    lines: List[str] = []
    if context:
        lines.append("Conversation so far:")
        for msg in context:
            speaker = "User" if msg.role == "user" else "Assistant"
            lines.append(f"{speaker}: {msg.content}")
    lines.append(f"CSV data:\n```csv\n{truncated}\n```")
    lines.append(f'New question: "{question}"')
    lines.append('Schema: {"answer": string}')
    payload = llm.complete_json(system, "\n".join(lines), temperature=0.2, max_output_tokens=800)
    return llm.require_output(ChatAnswer, payload)


# ---------------------------------------------------------------------------
# Charts
# ---------------------------------------------------------------------------


def generate_chart(csv_data: str, request: str) -> Optional[ChartSpec]:
    _require_text(csv_data, "csvData")
    _require_text(request, "request")
    truncated = llm.truncate_text(csv_data, config.CHART_MAX_CHARS)

    system = (
        "You are a data visualization assistant. Build exactly one chart for the user's request from the "
        "CSV data, choosing the most reasonable chart when the request is ambiguous. The object must have "
        "title, caption, chartType (bar|pie|scatter|line|area|treemap), data and config {dataKey, indexKey, "
        "xAxisLabel?, yAxisLabel?}. Use name/value items for bar, pie, line and area; x/y/z for scatter; "
        "name/size for treemap. " + _JSON_ONLY
    )
    user = f'User request: "{request}"\nCSV data:\n```csv\n{truncated}\n```'
    payload = llm.complete_json(system, user, temperature=0.2, max_output_tokens=2000)
    return llm.validate_output(ChartSpec, payload)


def enhance_chart_request(request: str, column_names: List[str]) -> EnhancedChartRequest:
    _require_text(request, "request")
    system = (
        "You translate vague chart requests into precise instructions for a chart generator. Pick the "
        "relevant columns (exact names in backticks), the chart type and the aggregation, and state them as "
        "one direct instruction. " + _JSON_ONLY
    )
    user = (
        f'User request: "{request}"\n'
        f"Column names: {json.dumps(list(column_names), ensure_ascii=False)}\n"
        'Schema: {"enhancedRequest": string}'
    )
    payload = llm.complete_json(system, user, temperature=0.3, max_output_tokens=400)
    return llm.require_output(EnhancedChartRequest, payload)
