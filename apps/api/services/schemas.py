"""Request/response contracts for the LLM flows.

Every flow has a pydantic model for its output. Model output is validated
against these shapes at the LLM boundary before anything else touches it.
Field names follow the camelCase wire format the web client already uses.
"""

from __future__ import annotations

from typing import List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

ChartType = Literal["bar", "pie", "scatter", "line", "area", "treemap"]
RecommendedChartType = Literal["bar", "pie", "scatter", "line", "histogram", "area", "treemap"]
FormulaType = Literal["Excel", "Google Sheets"]


class _Model(BaseModel):
    model_config = ConfigDict(extra="ignore")


# --- formulas ---
class FormulaResult(_Model):
    excelFormula: str
    googleSheetsFormula: str
    explanation: str


class FormulaExplanation(_Model):
    explanation: str


class EnhancedPrompt(_Model):
    enhancedDescription: str


# --- charts ---
class ChartDataItem(_Model):
    name: Optional[str] = None
    value: Optional[float] = None
    size: Optional[float] = None
    x: Optional[float] = None
    y: Optional[float] = None
    z: Optional[float] = None
    children: Optional[List["ChartDataItem"]] = None


class ChartConfig(_Model):
    dataKey: str
    indexKey: str
    xAxisLabel: Optional[str] = None
    yAxisLabel: Optional[str] = None


class ChartSpec(_Model):
    chartType: ChartType
    title: str
    caption: str
    data: List[ChartDataItem]
    config: ChartConfig


class RecommendedVisualization(ChartSpec):
    chartType: RecommendedChartType  # type: ignore[assignment]


class EnhancedChartRequest(_Model):
    enhancedRequest: str


# --- analysis ---
class ColumnStat(_Model):
    columnName: str
    value: Union[float, str]


class StatSection(_Model):
    title: str
    stats: List[ColumnStat] = Field(default_factory=list)


class CorrelationValue(_Model):
    column: str
    value: float


class CorrelationRow(_Model):
    column: str
    values: List[CorrelationValue]


class CorrelationAnalysis(_Model):
    interpretation: str
    matrix: List[CorrelationRow]


class Segment(_Model):
    name: str
    description: str


class SegmentationAnalysis(_Model):
    summary: str
    segments: List[Segment]


class AnalysisResult(_Model):
    fileName: str
    rowCount: int
    columnCount: int
    columnNames: List[str]
    executiveSummary: Optional[str] = None
    summaryStats: Optional[StatSection] = None
    missingValues: Optional[StatSection] = None
    columnTypes: Optional[StatSection] = None
    correlationAnalysis: Optional[CorrelationAnalysis] = None
    segmentationAnalysis: Optional[SegmentationAnalysis] = None
    recommendedVisualizations: List[RecommendedVisualization] = Field(default_factory=list)


# --- chat ---
class ChatMessage(_Model):
    role: Literal["user", "model"]
    content: str


class ChatAnswer(_Model):
    answer: str


# --- API requests ---
class FormulaRequest(BaseModel):
    description: str


class ExplainFormulaRequest(BaseModel):
    formula: str
    formulaType: FormulaType

    @field_validator("formulaType", mode="before")
    @classmethod
    def _normalise_type(cls, value):
        if isinstance(value, str) and value.replace(" ", "").lower() == "googlesheets":
            return "Google Sheets"
        return value


class EnhancePromptRequest(BaseModel):
    description: str


class DatasetInput(BaseModel):
    """Either inline CSV text or a previously uploaded dataset id."""

    csvData: Optional[str] = None
    dataset_id: Optional[str] = None


class AnalyzeRequest(DatasetInput):
    fileName: Optional[str] = None


class ChatRequest(DatasetInput):
    question: str
    history: Optional[List[ChatMessage]] = None


class ChartRequest(DatasetInput):
    request: str


class EnhanceChartRequestInput(BaseModel):
    request: str
    columnNames: List[str]


ChartDataItem.model_rebuild()
