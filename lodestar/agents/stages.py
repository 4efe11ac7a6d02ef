"""Concrete pipeline stages.

Every stage receives the same *context* mapping: ``context["input"]`` is
the raw run input (liked items / history), and every stage that already ran
has its human-facing text under its own stage name.  Each stage picks what
it needs and shapes it for the model in ``build_payload``.
"""

from __future__ import annotations

from typing import Any, Mapping

from lodestar.agents.base import StageAgent
from lodestar.agents.models import TextGenerator
from lodestar.core.state import Stage, utcnow
from lodestar.repository.monitor import RepositoryReport

_DESCRIPTION_LIMIT = 500


def _text(context: Mapping[str, Any], stage: Stage, fallback: str) -> str:
    value = context.get(stage.value)
    return value if value else fallback


class ContentAnalysisAgent(StageAgent):
    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.CONTENT_ANALYSIS,
            "extracts themes, topics and interests from the viewer's liked items and history",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        raw = context.get("input") or {}
        liked = [
            {
                "title": item.get("title", ""),
                "channelTitle": item.get("channelTitle", ""),
                "description": (item.get("description") or "")[:_DESCRIPTION_LIMIT],
            }
            for item in raw.get("likedItems") or []
        ]
        history = [
            {"title": item.get("title", ""), "channelTitle": item.get("channelTitle", "")}
            for item in raw.get("watchHistory") or []
        ]
        return {"likedItems": liked, "watchHistory": history}


class KnowledgeRetrievalAgent(StageAgent):
    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.KNOWLEDGE_RETRIEVAL,
            "gathers factual background on the identified topics",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        return {
            "analysisOutput": _text(context, Stage.CONTENT_ANALYSIS, "No content analysis available"),
            "timestamp": utcnow().isoformat(),
        }


class AnalogyGenerationAgent(StageAgent):
    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.ANALOGY_GENERATION,
            "connects the viewer's interests to concepts in other domains through analogies",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        return {
            "contentAnalysis": _text(context, Stage.CONTENT_ANALYSIS, "No content analysis available"),
            "knowledgeContext": _text(context, Stage.KNOWLEDGE_RETRIEVAL, "No knowledge context available"),
            "repositoryFindings": _text(context, Stage.REPOSITORY_ANALYSIS, "No repository analysis available"),
            "timestamp": utcnow().isoformat(),
        }


class AnalogyValidationAgent(StageAgent):
    CRITERIA = (
        "Accuracy - Does the analogy correctly represent the concepts?",
        "Relevance - Is the analogy clearly related to the viewer's interests?",
        "Educational value - Does the analogy offer a new perspective?",
        "Clarity - Is the analogy easy to understand?",
        "Engagement - Is the analogy likely to interest the viewer?",
    )

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.ANALOGY_VALIDATION,
            "checks the proposed analogies for accuracy, relevance and clarity",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        return {
            "generatedAnalogies": _text(context, Stage.ANALOGY_GENERATION, "No analogies provided"),
            "originalContentAnalysis": _text(context, Stage.CONTENT_ANALYSIS, "No content analysis available"),
            "originalKnowledgeContext": _text(context, Stage.KNOWLEDGE_RETRIEVAL, "No knowledge context available"),
            "validationCriteria": list(self.CRITERIA),
        }


class AnalogyRefinementAgent(StageAgent):
    GOALS = (
        "Improve clarity and comprehensibility",
        "Enhance accuracy and relevance",
        "Increase educational value",
        "Keep or improve the engagement factor",
    )

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.ANALOGY_REFINEMENT,
            "improves the analogies using the validation feedback",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        return {
            "originalAnalogies": _text(context, Stage.ANALOGY_GENERATION, "No original analogies provided"),
            "validationFeedback": _text(context, Stage.ANALOGY_VALIDATION, "No validation feedback provided"),
            "refinementGoals": list(self.GOALS),
        }


class ExplanationAgent(StageAgent):
    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.EXPLANATION,
            "presents the refined analogies to the viewer",
            generate, **kwargs,
        )

    def build_payload(self, context: Mapping[str, Any]) -> dict:
        return {
            "refinedAnalogies": _text(context, Stage.ANALOGY_REFINEMENT, "No refined analogies available"),
            "userInterests": _text(context, Stage.CONTENT_ANALYSIS, "No user interests identified"),
            "includeElements": [
                "Main analogy explanation",
                "Connection to the viewer's interests",
                "Insights gained",
                "Further explorations",
            ],
        }


class RepositoryAnalysisAgent(StageAgent):
    """Turns a :class:`RepositoryReport` into a reviewer-facing summary."""

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.REPOSITORY_ANALYSIS,
            "reviews code changes and scan findings of the monitored repository",
            generate, **kwargs,
        )

    def build_payload(self, report: RepositoryReport) -> dict:
        return report.to_payload()


class UserFeedbackAgent(StageAgent):
    CATEGORIES = (
        "Clarity - Was the analogy clear?",
        "Relevance - Was it relevant to the viewer's interests?",
        "Insight - Did it offer a new perspective?",
        "Engagement - Was it interesting?",
        "Overall satisfaction",
    )

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.USER_FEEDBACK,
            "assesses the viewer's feedback on the presented analogy",
            generate, **kwargs,
        )

    def build_payload(self, data: Mapping[str, Any]) -> dict:
        return {
            "userFeedback": data.get("feedback", ""),
            "presentedAnalogy": data.get("explanation") or "No analogy data available",
            "feedbackCategories": list(self.CATEGORIES),
        }


class LearningAgent(StageAgent):
    IMPROVEMENT_AREAS = (
        "Content analysis - identifying relevant interests",
        "Knowledge retrieval - quality of retrieved information",
        "Analogy generation - creativity and insight",
        "Analogy validation - accuracy of the critique",
        "Analogy refinement - quality of the improvements",
        "Explanation - clarity and engagement",
        "Overall process - end-to-end effectiveness",
    )

    def __init__(self, generate: TextGenerator, **kwargs: Any) -> None:
        super().__init__(
            Stage.LEARNING,
            "derives improvements to the pipeline from feedback",
            generate, **kwargs,
        )

    def build_payload(self, data: Mapping[str, Any]) -> dict:
        return {
            "processedFeedback": data.get("processedFeedback") or "No processed feedback available",
            "processingSteps": data.get("steps", []),
            "improvementAreas": list(self.IMPROVEMENT_AREAS),
        }


PIPELINE_AGENTS: dict[Stage, type[StageAgent]] = {
    Stage.REPOSITORY_ANALYSIS: RepositoryAnalysisAgent,
    Stage.CONTENT_ANALYSIS: ContentAnalysisAgent,
    Stage.KNOWLEDGE_RETRIEVAL: KnowledgeRetrievalAgent,
    Stage.ANALOGY_GENERATION: AnalogyGenerationAgent,
    Stage.ANALOGY_VALIDATION: AnalogyValidationAgent,
    Stage.ANALOGY_REFINEMENT: AnalogyRefinementAgent,
    Stage.EXPLANATION: ExplanationAgent,
    Stage.USER_FEEDBACK: UserFeedbackAgent,
    Stage.LEARNING: LearningAgent,
}


def build_stage_agents(generate: TextGenerator, word_cap: int = 250) -> dict[str, StageAgent]:
    """Instantiate one agent per stage, all sharing *generate*."""
    return {stage.value: cls(generate, word_cap=word_cap) for stage, cls in PIPELINE_AGENTS.items()}
