"""Unit tests for batch reporting."""

import json
import yaml
from datetime import datetime, timedelta

from kvm_spinup.models import BatchRun, Distribution, Outcome, Phase, VmResult
from kvm_spinup.report import BatchReport


def finished_batch(make_spec):
    batch = BatchRun(specs=[make_spec("a"), make_spec("b", Distribution.ALMA), make_spec("c")])
    batch.record(VmResult("a", Distribution.ROCKY, Outcome.SUCCESS, Phase.COMPLETE, duration=600))
    batch.record(
        VmResult(
            "b",
            Distribution.ALMA,
            Outcome.FAILED,
            Phase.MONITOR,
            reason="Installation of 'b' appears stuck",
            config_path="/work/vms/ks_b.cfg",
        )
    )
    batch.record(VmResult("c", Distribution.ROCKY, Outcome.SUCCESS, Phase.COMPLETE))
    batch.completed = batch.started + timedelta(seconds=1200)
    return batch


class TestBatchReport:
    """Test BatchReport."""

    def test_counts_and_order(self, make_spec):
        report = BatchReport.from_batch(finished_batch(make_spec))
        assert (report.total, report.succeeded, report.failed) == (3, 2, 1)
        assert [r.hostname for r in report.results] == ["a", "b", "c"]
        assert report.duration == 1200

    def test_text_lists_failure_phase_and_retained_config(self, make_spec):
        text = BatchReport.from_batch(finished_batch(make_spec)).render("text")
        assert "Total VMs: 3" in text
        assert "Failed: 1" in text
        assert "[FAIL] b (alma) at monitor: Installation of 'b' appears stuck" in text
        assert "kickstart kept at /work/vms/ks_b.cfg" in text

    def test_json(self, make_spec):
        data = json.loads(BatchReport.from_batch(finished_batch(make_spec)).render("json"))
        assert data["failed"] == 1
        assert data["vms"][1]["phase"] == "monitor"
        assert data["vms"][1]["config_path"] == "/work/vms/ks_b.cfg"
        assert data["vms"][0]["config_path"] is None

    def test_yaml(self, make_spec):
        data = yaml.safe_load(BatchReport.from_batch(finished_batch(make_spec)).render("yaml"))
        assert data["total"] == 3
        assert data["vms"][2]["outcome"] == "success"

    def test_unfinished_batch_has_no_duration(self, make_spec):
        report = BatchReport.from_batch(BatchRun(specs=[make_spec("a")]))
        assert report.duration is None
        assert report.results == []
