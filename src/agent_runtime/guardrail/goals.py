"""Goal inference and plan construction for a new task."""

from __future__ import annotations

import re
from typing import Protocol

from agent_runtime.guardrail.models import ExecutionStep, StepKind, TaskGoal

ARTIFACT_KEYWORDS = ("ppt", "presentation", "powerpoint", "slides")
SEARCH_KEYWORDS = ("search", "find", "papers", "research", "summarize", "latest", "news")
DOWNLOAD_KEYWORDS = ("download", "save the video", "save video")
TRANSCRIPT_KEYWORDS = ("transcript", "subtitles", "subtitle", "captions")
SUMMARY_KEYWORDS = ("summarize", "summarise", "summary")

VIDEO_URL_PATTERN = re.compile(
    r"https?://(?:www\.|m\.)?(?:youtube\.com|youtu\.be|bilibili\.com|b23\.tv|vimeo\.com)/\S+",
    re.I,
)

SEARCH_TOOLS = frozenset({"web_search", "paper_search"})
ARTIFACT_TOOLS = {"ppt_generator": "ppt"}

STEP_TOOLS: dict[StepKind, frozenset[str]] = {
    "video_probe": frozenset({"video_probe"}),
    "video_download": frozenset({"video_download"}),
    "video_transcript": frozenset({"video_transcript"}),
    "web_search": SEARCH_TOOLS,
    "ppt_generation": frozenset(ARTIFACT_TOOLS),
}

# Steps the model carries out in its own replies; no tool completes them directly.
MODEL_STEPS: frozenset[StepKind] = frozenset({"paper_selection", "summarization", "finalize_output"})

STEP_DESCRIPTIONS: dict[StepKind, str] = {
    "video_probe": "Probe the video for metadata and available formats",
    "video_download": "Download the requested video",
    "video_transcript": "Fetch or generate the video transcript",
    "web_search": "Search for relevant papers and sources",
    "paper_selection": "Select the most relevant results",
    "summarization": "Summarize the selected material",
    "ppt_generation": "Generate the presentation file",
    "finalize_output": "Report the final result to the user",
}


class GoalInference(Protocol):
    def infer(self, text: str) -> TaskGoal: ...


class KeywordGoalInference:
    """Heuristic keyword and URL classifier."""

    def infer(self, text: str) -> TaskGoal:
        lowered = text.lower()
        url_match = VIDEO_URL_PATTERN.search(text)
        video_url = url_match.group(0) if url_match else None

        requires_artifact = _contains_any(lowered, ARTIFACT_KEYWORDS)
        wants_summary = _contains_any(lowered, SUMMARY_KEYWORDS)

        requires_transcript = False
        requires_download = False
        requires_summary = False
        requires_search = _contains_any(lowered, SEARCH_KEYWORDS)
        if video_url:
            requires_download = _contains_any(lowered, DOWNLOAD_KEYWORDS)
            requires_summary = wants_summary
            requires_transcript = requires_summary or _contains_any(lowered, TRANSCRIPT_KEYWORDS)
            # the video itself is the source, a summary request alone is not a search
            requires_search = requires_search and not (
                wants_summary and not _contains_any(lowered, ("search", "find", "papers", "research"))
            )

        return TaskGoal(
            description=text.strip(),
            requires_search=requires_search,
            requires_artifact=requires_artifact,
            requires_video_probe=video_url is not None,
            requires_video_download=requires_download,
            requires_transcript=requires_transcript,
            requires_summary=requires_summary,
            video_url=video_url,
            expected_artifacts=["ppt"] if requires_artifact else [],
        )


def build_plan(goal: TaskGoal) -> list[ExecutionStep]:
    kinds: list[StepKind] = []
    if goal.requires_video_probe:
        kinds.append("video_probe")
    if goal.requires_video_download:
        kinds.append("video_download")
    if goal.requires_transcript:
        kinds.append("video_transcript")
    if goal.requires_search:
        kinds.append("web_search")
        if goal.requires_artifact:
            kinds.extend(["paper_selection", "summarization"])
    if goal.requires_artifact:
        kinds.append("ppt_generation")
    kinds.append("finalize_output")
    return [ExecutionStep(kind=kind, description=STEP_DESCRIPTIONS[kind]) for kind in kinds]


def is_search_tool(tool_name: str) -> bool:
    return tool_name in SEARCH_TOOLS


def tool_matches_step(tool_name: str, kind: StepKind) -> bool:
    return tool_name in STEP_TOOLS.get(kind, frozenset())


def _contains_any(text: str, keywords: tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)
