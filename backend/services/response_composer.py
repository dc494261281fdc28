"""Merges generated model text with plant-tool lookups into the final reply."""
import logging
from enum import Enum
from typing import List, Optional, Tuple

from models.tool import PlantRecord, ToolCallResult
from services.intent_router import Intent

logger = logging.getLogger(__name__)

NOT_AVAILABLE = "Não disponível"
SECTION_DELIMITER = "---"
SOURCE_LABEL = "base de plantas"


class QuestionShape(str, Enum):
    """What the user is asking about, as far as the appended section cares."""
    PLANTING = "planting"
    IDENTIFICATION = "identification"
    GENERAL = "general"


PLANTING_KEYWORDS = ("como plantar", "plantar", "cultivar", "muda", "semente")
IDENTIFICATION_KEYWORDS = ("que planta", "qual planta", "identificar", "identifique", "que flor")


def detect_question_shape(question: str, intent: Intent) -> QuestionShape:
    """
    Detect the question shape by keyword membership.

    Planting vocabulary wins over identification; image turns without
    planting vocabulary are identification questions.
    """
    question_lower = (question or "").lower()
    if any(keyword in question_lower for keyword in PLANTING_KEYWORDS):
        return QuestionShape.PLANTING
    if intent is Intent.IMAGE_LOOKUP or any(k in question_lower for k in IDENTIFICATION_KEYWORDS):
        return QuestionShape.IDENTIFICATION
    return QuestionShape.GENERAL


class ResponseComposer:
    """Appends a delimited technical section to the model text when a lookup succeeded."""

    def compose(
        self,
        model_text: str,
        intent: Intent,
        tool_result: Optional[ToolCallResult],
        question: str = ""
    ) -> str:
        """
        Compose the final reply.

        Args:
            model_text: Text generated by the language model (already non-empty)
            intent: Intent the turn was handled with
            tool_result: Outcome of the tool call, if one was made
            question: The user's literal question, used to pick fields

        Returns:
            model_text unchanged when there is nothing usable to add,
            otherwise model_text followed by the supplementary section
        """
        if intent is Intent.NONE or tool_result is None or not tool_result.ok:
            if tool_result is not None and not tool_result.ok:
                logger.info(f"Tool lookup unavailable ({tool_result.reason.value}), replying with model text only")
            return model_text

        payload = tool_result.payload
        if isinstance(payload, PlantRecord):
            shape = detect_question_shape(question, intent)
            section = self._render_record(payload, shape)
        elif isinstance(payload, str) and payload.strip():
            section = self._wrap(f"🌱 Informações adicionais ({SOURCE_LABEL})", [payload.strip()])
        else:
            return model_text

        return f"{model_text.rstrip()}\n\n{section}"

    def _render_record(self, record: PlantRecord, shape: QuestionShape) -> str:
        title = f"🌱 Informações técnicas sobre {record.display_name} (fonte: {SOURCE_LABEL})"
        lines = [f"- {label}: {value}" for label, value in self._fields_for(record, shape)]
        return self._wrap(title, lines)

    @staticmethod
    def _wrap(title: str, lines: List[str]) -> str:
        return "\n".join([SECTION_DELIMITER, title] + lines + [SECTION_DELIMITER])

    def _fields_for(self, record: PlantRecord, shape: QuestionShape) -> List[Tuple[str, str]]:
        identity = [
            ("Nome popular", _text(record.common_name)),
            ("Nome científico", _text(record.scientific_name)),
            ("Família", _text(record.family)),
        ]
        care = [
            ("Necessidade de água", _text(record.watering)),
            ("Exposição solar", _join(record.sunlight)),
        ]

        if shape is QuestionShape.PLANTING:
            return identity[1:2] + care + [
                ("Solo", _join(record.soil)),
                ("Propagação", _join(record.propagation)),
                ("Ciclo de vida", _text(record.cycle)),
                ("Clima ideal (zonas de rusticidade)", _hardiness(record)),
            ]
        if shape is QuestionShape.IDENTIFICATION:
            return identity + [
                ("Origem", _join(record.origin)),
            ] + care
        return identity[1:] + [
            ("Origem", _join(record.origin)),
            ("Clima ideal (zonas de rusticidade)", _hardiness(record)),
            ("Ciclo de vida", _text(record.cycle)),
        ] + care


def _text(value: Optional[str]) -> str:
    return value.strip() if value and value.strip() else NOT_AVAILABLE


def _join(values: List[str]) -> str:
    cleaned = [v.strip() for v in values if v and v.strip()]
    return ", ".join(cleaned) if cleaned else NOT_AVAILABLE


def _hardiness(record: PlantRecord) -> str:
    hardiness = record.hardiness
    if hardiness is None or (hardiness.min is None and hardiness.max is None):
        return NOT_AVAILABLE
    low = NOT_AVAILABLE if hardiness.min is None else hardiness.min
    high = NOT_AVAILABLE if hardiness.max is None else hardiness.max
    return f"Mín: {low}, Máx: {high}"
