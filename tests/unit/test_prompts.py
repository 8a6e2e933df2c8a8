"""Tests for prompt builders and research file locations."""

from pathlib import Path

from agent_workbench.core.prompts import (
    build_commit_message,
    build_follow_up_prompt,
    build_implementation_prompt,
    build_pr_body,
    build_research_prompt,
    build_revision_prompt,
    research_file_path,
)
from agent_workbench.core.task import CommentAnchor, ResearchComment, Task


def _task(**overrides):
    defaults = dict(id="t1", title="Add CSV export!", description="Users want CSV.")
    defaults.update(overrides)
    return Task(**defaults)


class TestResearchFilePath:
    def test_feature(self):
        """Features land in research/ with a punctuation-free slug."""
        assert research_file_path(_task(), "/proj") == Path("/proj/research/add-csv-export.md")

    def test_bug_goes_to_diagnosis(self):
        """Bugs land in research/diagnosis/."""
        path = research_file_path(_task(kind="bug", title="Login  fails"), "/proj")

        assert path == Path("/proj/research/diagnosis/login-fails.md")

    def test_output_dir_override(self):
        """An output directory replaces research/ but keeps diagnosis/."""
        path = research_file_path(_task(kind="bug"), "/proj", output_dir="/out")

        assert path == Path("/out/diagnosis/add-csv-export.md")


class TestResearchPrompts:
    def test_feature_prompt(self):
        """Feature research asks for an analysis document at the path."""
        prompt = build_research_prompt(_task(), Path("/proj/research/x.md"))

        assert prompt.startswith("Research the following task")
        assert "Task: Add CSV export!" in prompt
        assert prompt.endswith("Write the research document to the file: /proj/research/x.md")

    def test_bug_prompt(self):
        """Bug research asks for a structured diagnosis."""
        prompt = build_research_prompt(_task(kind="bug", description=""), Path("/d.md"))

        assert prompt.startswith("Diagnose the following bug")
        assert "## Diagnosis and Suggested Fix" in prompt
        assert "(no description provided)" in prompt

    def test_follow_up(self):
        """The follow-up names the file again."""
        assert build_follow_up_prompt(Path("/d.md")).endswith("to the file: /d.md")


def test_implementation_prompt_includes_research():
    """Research content is appended when present."""
    plain = build_implementation_prompt(_task())
    researched = build_implementation_prompt(_task(research_content="Use the csv module."))

    assert "Research Analysis" not in plain
    assert "Research Analysis:\nUse the csv module." in researched
    assert researched.endswith("Please implement the changes described above.")


def test_revision_prompt():
    """Comments are numbered with their anchors; output goes to the file when known."""
    comments = [
        ResearchComment(body="Cite sources", anchor=CommentAnchor(block_type="heading", preview="Approach")),
        ResearchComment(body="Shorter"),
    ]

    with_file = build_revision_prompt(_task(), "# Doc", comments, Path("/r.md"))
    inline = build_revision_prompt(_task(), "# Doc", comments)

    assert '1. [heading: "Approach..."]\n   Comment: Cite sources' in with_file
    assert "2. [paragraph: " in with_file
    assert with_file.endswith("Write the revised document to the file: /r.md")
    assert "Output ONLY the revised markdown" in inline


def test_commit_message_prefix():
    """Conventional prefix by task kind."""
    assert build_commit_message(_task(kind="bug")).startswith("fix: ")
    assert build_commit_message(_task(kind="chore")).startswith("chore: ")
    assert build_commit_message(_task()) == "feat: Add CSV export!\n\nTask: t1"


def test_pr_body():
    """Diff summaries are fenced; empty descriptions get a placeholder."""
    body = build_pr_body(_task(description=""), " a.py | 2 +-")

    assert body.startswith("_No description provided._")
    assert "Task: `t1`" in body
    assert "```\n a.py | 2 +-\n```" in body
