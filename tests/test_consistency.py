"""Tests for aps.utils.consistency: advisory cross-stage side-checks."""

from aps.agents.catalog import STAGES_BY_TYPE
from aps.utils.consistency import check_auth, check_entities, check_revision_targets, cross_stage_checks


def _users(*columns):
    return {"entities": [{"name": "users", "columns": [{"name": c, "type": "text"} for c in columns]}]}


class TestCheckAuth:
    def test_consistent_firebase(self, stage_outputs):
        assert check_auth("data", _users("id", "firebase_uid"), {"ux": stage_outputs["ux"]}) == []

    def test_firebase_with_password_hash(self, stage_outputs):
        issues = check_auth("data", _users("password_hash"), {"ux": stage_outputs["ux"]})
        assert issues == ["Auth mismatch: Firebase chosen but password_hash present in Data model."]

    def test_local_with_firebase_uid(self):
        prior = {"ux": {"auth": {"choice": "Local email + password"}}}
        issues = check_auth("data", _users("firebase_uid"), prior)
        assert issues == ["Auth mismatch: Local auth chosen but firebase_uid present in Data model."]

    def test_api_stage_checks_prior_data(self, stage_outputs):
        prior = {"ux": stage_outputs["ux"], "data": _users("password_hash")}
        assert len(check_auth("api", stage_outputs["api"], prior)) == 1

    def test_system_decision_fallback(self):
        prior = {"system": {"decisions": [{"key": "auth.choice", "value": "firebase", "reason": ""}]}}
        assert len(check_auth("data", _users("password_hash"), prior)) == 1

    def test_unchecked_stage(self, stage_outputs):
        assert check_auth("ui", _users("password_hash"), {"ux": stage_outputs["ux"]}) == []

    def test_no_auth_choice(self):
        assert check_auth("data", _users("password_hash"), {}) == []


class TestCheckEntities:
    def test_duplicate_entity_names(self):
        output = {"entities": [{"name": "Users"}, {"name": "tasks"}, {"name": "users"}]}
        assert check_entities("data", output) == ["Entity 'users' is defined more than once."]

    def test_other_stages_ignored(self):
        assert check_entities("api", {"entities": [{"name": "a"}, {"name": "a"}]}) == []


class TestCheckRevisionTargets:
    def test_unknown_target(self):
        output = {"revisionRequests": [{"targetPhase": "Data", "request": "x"}, {"targetPhase": "db", "request": "y"}]}
        assert check_revision_targets("critic", output, STAGES_BY_TYPE) == [
            "Revision request targets unknown stage 'db'."
        ]


class TestCrossStageChecks:
    def test_clean_run(self, stage_outputs):
        prior = {t: stage_outputs[t] for t in ("strategy", "ux", "system")}
        assert cross_stage_checks("data", stage_outputs["data"], prior) == []

    def test_critic_targets_only_checked_for_critic(self):
        output = {"revisionRequests": [{"targetPhase": "nowhere", "request": "x"}]}
        assert cross_stage_checks("critic", output, {}, known_types=STAGES_BY_TYPE) != []
        assert cross_stage_checks("ux", output, {}, known_types=STAGES_BY_TYPE) == []
