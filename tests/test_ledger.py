"""Tests for aps.ledger: fold_ledger, duplicate_keys, outputs_by_type."""

from datetime import datetime, timedelta, timezone

from aps.ledger import duplicate_keys, fold_ledger, outputs_by_type
from aps.state import StageResult

T0 = datetime(2025, 1, 1, tzinfo=timezone.utc)


def _decisions(*pairs):
    return {"decisions": [{"key": k, "value": v, "reason": f"because {v}"} for k, v in pairs]}


class TestFoldLedger:
    def test_empty(self):
        assert fold_ledger([]) == []

    def test_collects_all_keys(self, make_result):
        results = [
            make_result("strategy", _decisions(("monetization", "freemium")), completed_at=T0),
            make_result("system", _decisions(("auth.choice", "firebase")), completed_at=T0 + timedelta(seconds=1)),
        ]
        ledger = fold_ledger(results)
        assert [e["key"] for e in ledger] == ["monetization", "auth.choice"]
        assert ledger[0] == {"key": "monetization", "value": "freemium", "reason": "because freemium"}

    def test_latest_completion_wins(self, make_result):
        results = [
            make_result("system", _decisions(("db", "mysql")), completed_at=T0 + timedelta(seconds=5)),
            make_result("strategy", _decisions(("db", "postgres")), completed_at=T0),
        ]
        ledger = fold_ledger(results)
        assert ledger == [{"key": "db", "value": "mysql", "reason": "because mysql"}]

    def test_rerun_stage_overrides_later_stage(self, make_result):
        # A checklist re-run of strategy completes after system: strategy now wins.
        results = [
            make_result("system", _decisions(("platform", "web")), completed_at=T0),
            make_result("strategy", _decisions(("platform", "mobile")), completed_at=T0 + timedelta(minutes=1)),
        ]
        assert fold_ledger(results)[0]["value"] == "mobile"

    def test_ignores_incomplete_results(self):
        pending = StageResult(project_id="p1", stage_type="system", status="processing",
                              output=_decisions(("db", "mysql")))
        failed = StageResult(project_id="p1", stage_type="data", status="failed",
                             output=_decisions(("db", "sqlite")))
        assert fold_ledger([pending, failed]) == []

    def test_skips_malformed_decisions(self, make_result):
        output = {"decisions": [{"key": "", "value": "x"}, "nope", {"key": "ok", "value": 3}]}
        ledger = fold_ledger([make_result("system", output, completed_at=T0)])
        assert ledger == [{"key": "ok", "value": "3", "reason": ""}]

    def test_outputs_without_decisions(self, make_result):
        results = [make_result("ui", {"tokens": {}}, completed_at=T0), make_result("api", None, completed_at=T0)]
        assert fold_ledger(results) == []


class TestDuplicateKeys:
    def test_no_duplicates(self):
        outputs = {"strategy": _decisions(("a", "1")), "system": _decisions(("b", "2"))}
        assert duplicate_keys(outputs) == {}

    def test_reports_declaring_stages(self):
        outputs = {
            "strategy": _decisions(("auth.choice", "local")),
            "system": _decisions(("auth.choice", "firebase"), ("db", "pg")),
        }
        assert duplicate_keys(outputs) == {"auth.choice": ["strategy", "system"]}

    def test_same_stage_twice_is_not_a_duplicate(self):
        outputs = {"system": _decisions(("db", "pg"), ("db", "mysql"))}
        assert duplicate_keys(outputs) == {}


class TestOutputsByType:
    def test_completion_order_and_filtering(self, make_result):
        later = make_result("ux", {"u": 1}, completed_at=T0 + timedelta(seconds=2))
        earlier = make_result("strategy", {"s": 1}, completed_at=T0)
        failed = StageResult(project_id="p1", stage_type="data", status="failed")
        snapshot = outputs_by_type([later, earlier, failed])
        assert list(snapshot) == ["strategy", "ux"]
        assert snapshot["ux"] == {"u": 1}
