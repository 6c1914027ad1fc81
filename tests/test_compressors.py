"""Tests for category-aware compression."""

from canvas_agent.domain.context import compressors


DOMAIN_STATE = """## Current State
Canvas with 12 elements and 3 nodes
Structure:
- frame_1
- frame_2
- rect_1
- rect_2
- text_1
- text_2
- arrow_1
"""

HISTORY = "\n".join(["## Recent History"] + [f"- [iteration {i}] moved rect_{i}" for i in range(1, 9)])

SKILLS = """# Layout
Align things on a grid.
# Color
Use the brand palette.
# Typography
Prefer two fonts.
# Export
PNG at 2x.
"""

TASK = """## Task
Draw a house
### Plan
- [completed] Draw walls
- [in_progress] Draw roof
- [pending] Draw door
"""


class TestSummarize:
    def test_domain_state_keeps_leading_lines(self):
        summary = compressors.summarize("domain_state", DOMAIN_STATE)

        assert summary.splitlines()[0] == "## Current State"
        assert summary.endswith("(2 more lines)")

    def test_history_keeps_latest_operations(self):
        summary = compressors.summarize("history", HISTORY)

        lines = summary.splitlines()
        assert lines[0] == "Recent operations:"
        assert lines[1:] == [f"- [iteration {i}] moved rect_{i}" for i in range(4, 9)]

    def test_skills_keep_headers(self):
        assert compressors.summarize("skills", SKILLS) == "# Layout\n# Color\n# Typography\n# Export"

    def test_task_drops_finished_items(self):
        summary = compressors.summarize("task", TASK)

        assert "Draw walls" not in summary
        assert "- [in_progress] Draw roof" in summary
        assert "Draw a house" in summary

    def test_unknown_category_truncates(self):
        assert compressors.summarize("notes", "abcdefgh") == "abcd..."


class TestMinimize:
    def test_domain_state_counts_elements(self):
        assert compressors.minimize("domain_state", DOMAIN_STATE) == "Domain state: 15 elements"

    def test_history_counts_operations(self):
        assert compressors.minimize("history", HISTORY) == "History: 8 recent operations"

    def test_skills_name_first_three(self):
        assert compressors.minimize("skills", SKILLS) == "Skills: Layout, Color, Typography"

    def test_task_counts_open_items(self):
        assert compressors.minimize("task", TASK) == "Tasks: 2 open of 3"

    def test_corrections_count(self):
        block = "## Important Corrections\n\n- STOP one\n- STOP two\n\nAcknowledge these."
        assert compressors.minimize("corrections", block) == "Corrections: 2 pending"

    def test_unknown_category_marker(self):
        assert compressors.minimize("notes", "x" * 40) == "[notes: 10 tokens compressed]"


def test_count_only():
    assert compressors.count_only("history", 321) == "[history: 321 tokens available on request]"
