"""Tests for repeated-failure detection."""

import pytest

from canvas_agent.domain.context.echo_prevention import (
    CORRECTIONS_FOOTER,
    CORRECTIONS_HEADER,
    CorrectionKind,
    CorrectionStatus,
    EchoPoisoningPrevention,
    detect_id_hallucination,
    hash_input,
    referenced_ids,
)


class TestHashInput:
    def test_insensitive_to_key_order_case_and_spacing(self):
        assert hash_input({"kind": "Rect", "label": "a  b"}) == hash_input({"label": "A B", "kind": "rect"})

    def test_different_inputs_differ(self):
        assert hash_input({"id": "el_1"}) != hash_input({"id": "el_2"})


class TestRepeatedFailures:
    def test_three_failures_emit_one_correction(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)

        first = echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Not found")
        second = echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Not found")
        third = echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Not found")

        assert first is None
        assert second is not None and second.status == CorrectionStatus.PENDING
        assert third is None
        assert len(echo.pending_corrections()) == 1

        block = echo.format_corrections_for_context()
        assert block.count("STOP retrying") == 1
        assert block.startswith(CORRECTIONS_HEADER)
        assert block.endswith(CORRECTIONS_FOOTER)
        assert echo.format_corrections_for_context() is None

        # Further failures of an emitted signature stay quiet
        assert echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Not found") is None
        assert echo.has_pending is False

    def test_message_names_tool_input_and_error(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)
        echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Not found")
        record = echo.record_tool_result("delete_element", {"id": "el_9"}, False, "Element   el_9\nnot found")

        assert record.message == (
            'STOP retrying "delete_element" with input {"id": "el_9"}. '
            "It has failed 2 times. Last error: Element el_9 not found. Try a different approach."
        )

    def test_successes_are_not_tracked(self):
        echo = EchoPoisoningPrevention()

        assert echo.record_tool_result("list_elements", {}, True) is None
        assert echo.records == []

    def test_distinct_inputs_are_tracked_separately(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)
        echo.record_tool_result("delete_element", {"id": "el_1"}, False, "Not found")
        echo.record_tool_result("delete_element", {"id": "el_2"}, False, "Not found")

        assert echo.has_pending is False
        assert len(echo.records) == 2

    def test_threshold_of_one_corrects_first_failure(self):
        echo = EchoPoisoningPrevention(loop_threshold=1)
        assert echo.record_tool_result("delete_element", {"id": "el_1"}, False, "Locked") is not None

    def test_invalid_threshold(self):
        with pytest.raises(ValueError):
            EchoPoisoningPrevention(loop_threshold=0)

    def test_iterations_are_recorded(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)
        echo.set_iteration(3)
        echo.record_tool_result("delete_element", {"id": "el_1"}, False, "Locked")
        echo.set_iteration(5)
        record = echo.record_tool_result("delete_element", {"id": "el_1"}, False, "Locked")

        assert record.first_iteration == 3
        assert record.last_iteration == 5


class TestGenerationErrors:
    def test_identical_errors_produce_correction(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)

        assert echo.record_generation_error("Schema rejected") is None
        record = echo.record_generation_error("Schema rejected")

        assert record.message.startswith("Response generation has failed 2 times")

    def test_different_errors_do_not(self):
        echo = EchoPoisoningPrevention(loop_threshold=2)
        echo.record_generation_error("Schema rejected")

        assert echo.record_generation_error("Rate limited") is None


def test_restore_round_trip():
    echo = EchoPoisoningPrevention(loop_threshold=2)
    echo.record_tool_result("delete_element", {"id": "el_1"}, False, "Locked")

    restored = EchoPoisoningPrevention(loop_threshold=2)
    restored.restore(echo.records)

    assert restored.record_tool_result("delete_element", {"id": "el_1"}, False, "Locked") is not None


class TestReferences:
    def test_referenced_ids_reads_strings_lists_and_objects(self):
        payload = {"id": "el_1", "targets": ["el_2", {"id": "el_3"}], "label": "roof"}

        assert referenced_ids(payload, ["id", "targets"]) == ["el_1", "el_2", "el_3"]
        assert referenced_ids(None, ["id"]) == []

    def test_detect_id_hallucination(self):
        assert detect_id_hallucination(["el_1", "el_9"], {"el_1", "el_2"}) == ["el_9"]

    def test_validate_tool_input(self):
        echo = EchoPoisoningPrevention()

        check = echo.validate_tool_input("delete_element", {"id": "el_9"}, ["id"], {"el_1"})

        assert check.valid is False
        assert check.issues[0].claimed == "el_9"
        assert check.issues[0].message == '"delete_element" targets "el_9", which does not exist'
        assert echo.validate_tool_input("delete_element", {"id": "el_1"}, ["id"], {"el_1"}).valid is True

    def test_validate_tool_result(self):
        echo = EchoPoisoningPrevention()

        check = echo.validate_tool_result("create_element", {"created_ids": ["el_1", "el_2"]}, {"el_1"})

        assert [issue.claimed for issue in check.issues] == ["el_2"]
        assert echo.validate_tool_result("create_element", "ok", set()).valid is True

    def test_unconfirmed_claims_queue_corrections_once(self):
        echo = EchoPoisoningPrevention()
        echo.track_created_ids("create_element", {"created_ids": ["el_1", "el_ghost"]})
        echo.track_created_ids("list_elements", {"elements": []})

        check = echo.verify_created_ids({"el_1"})

        assert [issue.claimed for issue in check.issues] == ["el_ghost"]
        assert [record.kind for record in echo.pending_corrections()] == [CorrectionKind.INVALID_REFERENCE]
        assert echo.verify_created_ids(set()).valid is True

    def test_add_correction_ignores_repeated_subject(self):
        echo = EchoPoisoningPrevention()

        first = echo.add_invalid_reference_correction("el_9")
        second = echo.add_invalid_reference_correction("el_9")

        assert first.status == CorrectionStatus.PENDING
        assert second is None
        assert echo.format_corrections_for_context().count('"el_9" does not exist') == 1
        assert echo.add_invalid_reference_correction("el_9") is None
