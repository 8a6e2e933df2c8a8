"""Prompt builders for research, implementation and research revision runs."""

from pathlib import Path
from typing import Iterable, Optional, Union

from ..utils.validators import file_slug
from .task import ResearchComment, Task, TaskKind

RESEARCH_DIR = "research"
DIAGNOSIS_DIR = "diagnosis"


def research_file_path(
    task: Task,
    project_path: Union[str, Path],
    output_dir: Optional[Union[str, Path]] = None,
) -> Path:
    """
    Deterministic location of a task's research document.

    Args:
        task: The task; bugs go under ``diagnosis/``
        project_path: Project root
        output_dir: Overrides ``<project>/research``

    Returns:
        ``research/<slug>.md`` or ``research/diagnosis/<slug>.md``
    """
    base = Path(output_dir) if output_dir else Path(project_path) / RESEARCH_DIR
    if task.kind == TaskKind.BUG.value:
        base = base / DIAGNOSIS_DIR
    return base / f"{file_slug(task.title)}.md"


def build_research_prompt(task: Task, expected_file: Path) -> str:
    description = task.description or "(no description provided)"

    if task.kind == TaskKind.BUG.value:
        lines = [
            "Diagnose the following bug and suggest a fix.",
            "",
            f"Bug: {task.title}",
            "",
            "Description:",
            description,
            "",
            "Systematically analyze this bug. Identify the root cause and propose a concrete fix.",
            'Structure your output under a "## Diagnosis and Suggested Fix" heading with subsections',
            "for: Symptoms, Root Cause Analysis, Suggested Fix, and Verification Steps.",
            "",
            f"Write the diagnosis to the file: {expected_file}",
        ]
    else:
        lines = [
            "Research the following task and produce a detailed analysis document in Markdown format.",
            "",
            f"Task: {task.title}",
            "",
            "Description:",
            description,
            "",
            "Please provide a thorough research document covering technical analysis, "
            "proposed approach, considerations, and implementation guidance.",
            "",
            f"Write the research document to the file: {expected_file}",
        ]
    return "\n".join(lines)


def build_follow_up_prompt(expected_file: Path) -> str:
    return (
        "Your research output was not saved to disk. "
        f"Please write the content you just produced to the file: {expected_file}"
    )


def build_implementation_prompt(task: Task) -> str:
    prompt = (
        "Implement the following task:\n\n"
        f"Title: {task.title}\n\n"
        f"Description:\n{task.description or '(none)'}"
    )
    if task.research_content:
        prompt += f"\n\nResearch Analysis:\n{task.research_content}"
    prompt += "\n\nPlease implement the changes described above."
    return prompt


def format_review_comments(comments: Iterable[ResearchComment]) -> str:
    """Numbered comment list, each anchored to the block it refers to."""
    return "\n\n".join(
        f'{i}. [{c.anchor.block_type}: "{c.anchor.preview}..."]\n   Comment: {c.body}'
        for i, c in enumerate(comments, start=1)
    )


def build_revision_prompt(
    task: Task,
    snapshot: str,
    comments: Iterable[ResearchComment],
    expected_file: Optional[Path] = None,
) -> str:
    if expected_file is not None:
        closing = f"Write the revised document to the file: {expected_file}"
    else:
        closing = (
            "Output ONLY the revised markdown document content. "
            "Do not include meta-commentary about the changes."
        )

    return "\n".join([
        f'You previously produced the following research document for the task "{task.title}":',
        "",
        "---BEGIN RESEARCH---",
        snapshot,
        "---END RESEARCH---",
        "",
        "The reviewer has left the following comments requesting changes:",
        "",
        format_review_comments(comments),
        "",
        "Please produce an updated version of the research document that addresses each comment.",
        closing,
    ])


def build_commit_message(task: Task) -> str:
    prefix = "fix" if task.kind == TaskKind.BUG.value else "feat"
    if task.kind == TaskKind.CHORE.value:
        prefix = "chore"
    return f"{prefix}: {task.title}\n\nTask: {task.id}"


def build_pr_body(task: Task, diff_summary: str) -> str:
    body = task.description or "_No description provided._"
    parts = [body, "", f"Task: `{task.id}`"]
    if diff_summary:
        parts.extend(["", "```", diff_summary, "```"])
    return "\n".join(parts)
