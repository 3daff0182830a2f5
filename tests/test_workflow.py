import pytest
import json
import os
import sys

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from graph.workflow import WorkflowGraph, Stage, DEFAULT_STAGES, load_stage_catalog


class TestWorkflowGraph:
    """Test stage lookups and transition rules."""

    def setup_method(self):
        self.graph = WorkflowGraph(DEFAULT_STAGES)

    def test_get_stage_known(self):
        """Known codes return their catalog entry."""
        stage = self.graph.get_stage("Credit_Review")

        assert stage.label == "Underwriting"
        assert stage.progress == 45
        assert stage.role == "Credit"
        assert stage.next == "Sanctioned"

    def test_get_stage_unknown_is_synthetic(self):
        """Unknown codes get a synthetic, non-final stage instead of an error."""
        stage = self.graph.get_stage("Legacy_Hold")

        assert stage == Stage(code="Legacy_Hold", label="Legacy_Hold", progress=0, is_final=False)

    def test_next_options_order(self):
        """Advance comes first, then fail, then optional."""
        codes = [s.code for s in self.graph.next_options("Docs_Validation")]
        assert codes == ["Login", "Docs_Pending", "Rejected"]

        codes = [s.code for s in self.graph.next_options("Credit_Review")]
        assert codes == ["Sanctioned", "Rejected", "PD_Scheduled"]

    def test_rejected_offered_from_every_open_stage(self):
        """Every non-final stage can be rejected."""
        for stage in self.graph.stages():
            codes = [s.code for s in self.graph.next_options(stage.code)]
            if stage.is_final:
                assert codes == []
            else:
                assert "Rejected" in codes

    def test_final_stages_have_no_options(self):
        assert self.graph.next_options("Disbursed") == []
        assert self.graph.next_options("Rejected") == []

    def test_unknown_stage_can_only_be_rejected(self):
        codes = [s.code for s in self.graph.next_options("Legacy_Hold")]
        assert codes == ["Rejected"]

    def test_self_transition_always_valid(self):
        """Idempotent self-transitions are allowed for every stage."""
        for code in self.graph.codes():
            assert self.graph.is_valid_transition(code, code) is True

    def test_transitions_from_submitted(self):
        assert self.graph.is_valid_transition("Submitted", "Rejected") is True
        assert self.graph.is_valid_transition("Submitted", "Docs_Validation") is True
        assert self.graph.is_valid_transition("Submitted", "Disbursed") is False
        assert self.graph.is_valid_transition("Submitted", "Credit_Review") is False

    def test_final_stage_cannot_reopen(self):
        assert self.graph.is_valid_transition("Rejected", "Submitted") is False
        assert self.graph.is_valid_transition("Disbursed", "Rejected") is False

    def test_unknown_source_stage_is_permissive(self):
        """Admins can always force a state from inconsistent data."""
        assert self.graph.is_valid_transition("Approved", "Disbursed") is True
        assert self.graph.is_valid_transition("", "Submitted") is True

    def test_progress(self):
        assert self.graph.progress("Submitted") == 10
        assert self.graph.progress("Disbursed") == 100
        assert self.graph.progress("Whatever") == 0

    def test_happy_path_progress_is_monotonic(self):
        code = "Submitted"
        seen = [self.graph.progress(code)]
        while self.graph.get_stage(code).next:
            code = self.graph.get_stage(code).next
            seen.append(self.graph.progress(code))

        assert code == "Disbursed"
        assert seen == sorted(seen)


class TestStageCatalog:
    """Test loading and validating the stage catalog."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "stages.json"
        path.write_text(json.dumps([
            {"code": "Submitted", "label": "New", "progress": 10, "role": "Agent", "next": "Disbursed"},
            {"code": "Disbursed", "label": "Paid", "progress": 100, "role": "Finance", "is_final": True},
            {"code": "Rejected", "label": "Closed", "progress": 100, "role": "System", "is_final": True},
        ]))

        graph = WorkflowGraph(load_stage_catalog(str(path)))

        assert graph.codes() == ["Submitted", "Disbursed", "Rejected"]
        assert [s.code for s in graph.next_options("Submitted")] == ["Disbursed", "Rejected"]

    def test_missing_file_uses_defaults(self, tmp_path):
        stages = load_stage_catalog(str(tmp_path / "missing.json"))
        assert [s["code"] for s in stages] == [s["code"] for s in DEFAULT_STAGES]

    def test_shipped_catalog_matches_defaults(self):
        root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        stages = load_stage_catalog(os.path.join(root, "infra", "stages.json"))
        assert stages == DEFAULT_STAGES

    def test_invalid_json_raises(self, tmp_path):
        path = tmp_path / "stages.json"
        path.write_text("{not json")

        with pytest.raises(ValueError):
            load_stage_catalog(str(path))

    def test_dangling_edge_raises(self):
        stages = [dict(s) for s in DEFAULT_STAGES]
        stages[0]["next"] = "Nowhere"

        with pytest.raises(ValueError, match="unknown stage"):
            WorkflowGraph(stages)

    def test_missing_rejected_raises(self):
        stages = [dict(s) for s in DEFAULT_STAGES if s["code"] != "Rejected"]
        stages = [s for s in stages if s.get("fail") != "Rejected"]

        with pytest.raises(ValueError):
            WorkflowGraph(stages)

    def test_unreachable_stage_raises(self):
        stages = [dict(s) for s in DEFAULT_STAGES]
        stages.append({"code": "Orphan", "label": "Orphan", "progress": 5, "role": "Ops"})

        with pytest.raises(ValueError, match="unreachable"):
            WorkflowGraph(stages)


if __name__ == "__main__":
    # Run tests
    pytest.main([__file__, "-v"])
