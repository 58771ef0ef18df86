"""Tests for the commit-keyed decision ledger."""

import json
from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from testivai.baseline.manager import BaselineManager
from testivai.errors import CommitNotInHistoryError, LedgerCorruptedError, PersistenceError
from testivai.history.ledger import DecisionLedger
from testivai.models.approvals import Decision
from testivai.models.git_info import GitInfo, PRInfo
from testivai.models.history import RevertPlan, RevertTarget
from testivai.storage.json_store import JsonDocumentStore


def accept(ts: str = "2025-01-01T00:00:00Z") -> Decision:
    return Decision(action="accept", timestamp=ts)


def reject(ts: str = "2025-01-01T00:00:00Z") -> Decision:
    return Decision(action="reject", timestamp=ts)


def commit(short_sha: str, branch: str = "feature/x") -> GitInfo:
    return GitInfo(
        branch=branch,
        sha=short_sha * 5,
        short_sha=short_sha,
        author="Dana Dev",
        email="dana@example.com",
        timestamp="2025-01-01T00:00:00Z",
        message=f"commit {short_sha}",
    )


@pytest.fixture
def ledger(history_store: JsonDocumentStore, approvals_store: JsonDocumentStore, tmp_path: Path) -> DecisionLedger:
    return DecisionLedger(
        history_store,
        approvals_store,
        baseline_dir=tmp_path / "baseline",
        report_dir=tmp_path / "reports",
        framework="playwright",
    )


def read_json(store: JsonDocumentStore) -> dict:
    return json.loads(store.path.read_text())


# ============================================================================
# upsert
# ============================================================================


class TestUpsert:
    """Tests for DecisionLedger.upsert."""

    def test_first_upsert_creates_ledger(self, ledger: DecisionLedger, git_info: GitInfo):
        result = ledger.upsert({"home": accept()}, git_info)

        assert result.max_history == 5
        assert len(result.commits) == 1
        entry = result.commits[0]
        assert entry.short_sha == "abc1234"
        assert entry.full_sha == git_info.sha
        assert entry.branch == "feature/login"
        assert entry.summary.total_tests == 1
        assert entry.summary.accepted == 1

    def test_persists_camel_case(self, ledger: DecisionLedger, history_store, git_info: GitInfo):
        ledger.upsert({"home": accept()}, git_info)

        data = read_json(history_store)
        assert data["maxHistory"] == 5
        commit_data = data["commits"][0]
        assert commit_data["shortSha"] == "abc1234"
        assert commit_data["approvals"]["home"]["action"] == "accept"
        assert commit_data["summary"] == {"totalTests": 1, "accepted": 1, "rejected": 0, "pending": 0}

    def test_same_commit_merges_decisions(self, ledger: DecisionLedger, git_info: GitInfo):
        ledger.upsert({"home": accept(), "login": accept()}, git_info)
        result = ledger.upsert({"login": reject(), "cart": reject()}, git_info)

        assert len(result.commits) == 1
        approvals = result.commits[0].approvals
        assert approvals["home"].action == "accept"
        assert approvals["login"].action == "reject"
        assert approvals["cart"].action == "reject"
        summary = result.commits[0].summary
        assert (summary.total_tests, summary.accepted, summary.rejected) == (3, 1, 2)

    def test_existing_commit_moves_to_front(self, ledger: DecisionLedger):
        ledger.upsert({"a": accept()}, commit("aaa"))
        ledger.upsert({"b": accept()}, commit("bbb"))
        result = ledger.upsert({"c": accept()}, commit("aaa"))

        assert [c.short_sha for c in result.commits] == ["aaa", "bbb"]
        assert set(result.commits[0].approvals) == {"a", "c"}

    def test_existing_commit_metadata_refreshed(self, ledger: DecisionLedger):
        ledger.upsert({"a": accept()}, commit("aaa"))
        amended = commit("aaa").model_copy(update={"message": "amended", "author": "Sam"})
        result = ledger.upsert({"b": accept()}, amended)

        assert result.commits[0].message == "amended"
        assert result.commits[0].author == "Sam"

    def test_new_commit_prepended(self, ledger: DecisionLedger):
        for sha in ("aaa", "bbb", "ccc"):
            ledger.upsert({"x": accept()}, commit(sha))
        assert [c.short_sha for c in ledger.load().commits] == ["ccc", "bbb", "aaa"]

    def test_capped_at_max_history(self, history_store, approvals_store):
        ledger = DecisionLedger(history_store, approvals_store, max_history=3)
        for sha in ("a1", "a2", "a3", "a4", "a5"):
            ledger.upsert({"x": accept()}, commit(sha))

        commits = ledger.load().commits
        assert [c.short_sha for c in commits] == ["a5", "a4", "a3"]

    def test_bounded_history_drops_oldest(self, ledger: DecisionLedger, history_store):
        history_store.write({
            "maxHistory": 2,
            "commits": [
                {
                    "shortSha": sha, "fullSha": sha, "author": "a", "email": "e", "date": "d",
                    "message": "m", "branch": "feature/x", "approvalTimestamp": "t",
                    "approvals": {}, "summary": {"totalTests": 0, "accepted": 0, "rejected": 0, "pending": 0},
                }
                for sha in ("old1", "old2")
            ],
        })

        result = ledger.upsert({"home": accept()}, commit("new1"))

        assert [c.short_sha for c in result.commits] == ["new1", "old1"]
        assert result.max_history == 2

    def test_commits_unique_by_short_sha(self, ledger: DecisionLedger):
        for sha in ("aaa", "bbb", "aaa", "ccc", "bbb", "aaa"):
            ledger.upsert({"x": accept()}, commit(sha))
        shas = [c.short_sha for c in ledger.load().commits]
        assert len(shas) == len(set(shas))
        assert shas == ["aaa", "bbb", "ccc"]

    def test_corrupted_history_is_fatal(self, ledger: DecisionLedger, history_store, git_info: GitInfo):
        history_store.path.parent.mkdir(parents=True, exist_ok=True)
        history_store.path.write_text("{broken")

        with pytest.raises(LedgerCorruptedError):
            ledger.upsert({"home": accept()}, git_info)

        assert history_store.path.read_text() == "{broken"
        assert not history_store.lock_path.exists()

    def test_invalid_history_shape_is_corrupted(self, ledger: DecisionLedger, history_store, git_info: GitInfo):
        history_store.write({"maxHistory": 0, "commits": "nope"})
        with pytest.raises(LedgerCorruptedError):
            ledger.upsert({"home": accept()}, git_info)

    def test_write_failure_propagates(self, ledger: DecisionLedger, git_info: GitInfo):
        with patch.object(JsonDocumentStore, "write", side_effect=PersistenceError("disk full")):
            with pytest.raises(PersistenceError):
                ledger.upsert({"home": accept()}, git_info)


class TestApprovalsSnapshotUpdate:
    """upsert also maintains approvals.json."""

    def test_accept_and_reject_move_names(self, ledger: DecisionLedger, approvals_store, git_info: GitInfo):
        ledger.upsert({"home": reject(), "login": accept()}, git_info)
        ledger.upsert({"home": accept()}, git_info)

        snapshot = ledger.load_approvals()
        assert snapshot.approved == ["login", "home"]
        assert snapshot.rejected == []

    def test_meta_refreshed(self, ledger: DecisionLedger, approvals_store, git_info: GitInfo):
        pr = PRInfo(
            number=3,
            url="https://github.com/o/r/pull/3",
            source="github-actions",
            commit_url="https://github.com/o/r/commit/abc",
        )
        ledger.upsert({"home": accept()}, git_info, pr_info=pr)

        meta = read_json(approvals_store)["meta"]
        assert meta["author"] == "Dana Dev"
        assert meta["commit_sha"] == git_info.sha
        assert meta["source"] == "github-actions"
        assert meta["pr_url"] == "https://github.com/o/r/pull/3"
        assert meta["commit_url"] == "https://github.com/o/r/commit/abc"
        assert meta["timestamp"]

    def test_explicit_source_wins(self, ledger: DecisionLedger, git_info: GitInfo):
        ledger.upsert({"home": accept()}, git_info, source="cli")
        assert ledger.load_approvals().meta.source == "cli"

    def test_snapshot_keys_are_snake_case(self, ledger: DecisionLedger, approvals_store, git_info: GitInfo):
        ledger.upsert({"home": accept()}, git_info)
        data = read_json(approvals_store)
        assert set(data) == {"approved", "rejected", "new", "deleted", "meta"}
        assert "pr_url" not in data["meta"]

    def test_corrupted_approvals_is_fatal(self, ledger: DecisionLedger, approvals_store, git_info: GitInfo):
        approvals_store.path.parent.mkdir(parents=True, exist_ok=True)
        approvals_store.path.write_text("[]")
        with pytest.raises(LedgerCorruptedError):
            ledger.upsert({"home": accept()}, git_info)


class TestClearDecision:
    def test_clears_existing(self, ledger: DecisionLedger, git_info: GitInfo):
        ledger.upsert({"home": accept(), "login": reject()}, git_info)

        assert ledger.clear_decision("login") is True

        snapshot = ledger.load_approvals()
        assert snapshot.approved == ["home"]
        assert snapshot.rejected == []

    def test_unknown_name(self, ledger: DecisionLedger):
        assert ledger.clear_decision("nothing") is False

    def test_history_untouched(self, ledger: DecisionLedger, git_info: GitInfo):
        ledger.upsert({"home": accept()}, git_info)
        ledger.clear_decision("home")
        assert "home" in ledger.load().commits[0].approvals


# ============================================================================
# accepted images
# ============================================================================


class TestAcceptedImages:
    """Images archived per commit when decisions are recorded."""

    def test_accepted_image_archived_under_commit(self, ledger: DecisionLedger, tmp_path: Path, make_png):
        image = make_png(tmp_path / "capture.png", color=(0, 255, 0, 255))

        ledger.upsert({"home": accept()}, commit("aaa"), images={"home": image})

        archived = tmp_path / "reports" / "history" / "aaa" / "playwright" / "home.png"
        assert archived.read_bytes() == image.read_bytes()

    def test_rejected_image_not_archived(self, ledger: DecisionLedger, tmp_path: Path, make_png):
        image = make_png(tmp_path / "capture.png")

        ledger.upsert({"home": reject()}, commit("aaa"), images={"home": image})

        assert not ledger.accepted_path("aaa", "home").exists()

    def test_missing_image_is_skipped(self, ledger: DecisionLedger, tmp_path: Path):
        ledger.upsert({"home": accept()}, commit("aaa"), images={"home": tmp_path / "missing.png"})

        assert not ledger.accepted_path("aaa", "home").exists()
        assert ledger.load().commits[0].approvals["home"].action == "accept"

    def test_archive_removed_when_commit_drops_out(
        self, history_store, approvals_store, tmp_path: Path, make_png
    ):
        ledger = DecisionLedger(history_store, approvals_store, max_history=2, report_dir=tmp_path / "reports")
        image = make_png(tmp_path / "capture.png")
        for sha in ("a1", "a2", "a3"):
            ledger.upsert({"home": accept()}, commit(sha), images={"home": image})

        assert not (tmp_path / "reports" / "history" / "a1").exists()
        assert ledger.accepted_path("a2", "home").exists()
        assert ledger.accepted_path("a3", "home").exists()

    def test_copy_failure_raises_persistence_error(self, ledger: DecisionLedger, tmp_path: Path, make_png):
        image = make_png(tmp_path / "capture.png")
        with patch.object(ledger.fs, "copy", side_effect=PermissionError("read-only")):
            with pytest.raises(PersistenceError):
                ledger.upsert({"home": accept()}, commit("aaa"), images={"home": image})
        assert ledger.load().commits == []


# ============================================================================
# revert
# ============================================================================


class TestRevert:
    """Tests for revert and apply_revert."""

    def test_unknown_commit_raises(self, ledger: DecisionLedger):
        with pytest.raises(CommitNotInHistoryError) as exc_info:
            ledger.revert("nope")
        assert isinstance(exc_info.value, LookupError)
        assert exc_info.value.short_sha == "nope"

    def test_plan_lists_accepted_only(self, ledger: DecisionLedger, tmp_path: Path):
        ledger.upsert({"home": accept(), "login": reject(), "cart": accept()}, commit("aaa", branch="feature/x"))

        plan = ledger.revert("aaa")

        assert plan.short_sha == "aaa"
        assert plan.branch == "feature/x"
        by_name = {t.name: t for t in plan.targets}
        assert set(by_name) == {"home", "cart"}
        assert by_name["home"].source_path == str(tmp_path / "reports" / "history" / "aaa" / "playwright" / "home.png")
        assert by_name["home"].baseline_path == str(tmp_path / "baseline" / "playwright" / "home.png")

    def test_revert_does_not_touch_files(self, ledger: DecisionLedger, tmp_path: Path):
        ledger.upsert({"home": accept()}, commit("aaa"))
        ledger.revert("aaa")
        assert not (tmp_path / "baseline").exists()

    def test_apply_revert_restores_baselines(self, ledger: DecisionLedger, tmp_path: Path, make_png):
        image = make_png(tmp_path / "compare" / "feature-x" / "playwright" / "home.png", color=(0, 0, 255, 255))
        ledger.upsert(
            {"home": accept(), "cart": accept()},
            commit("aaa", branch="feature/x"),
            images={"home": image},
        )

        outcome = ledger.apply_revert(ledger.revert("aaa"), BaselineManager())

        assert outcome.restored == ["home"]
        assert outcome.failed == ["cart"]
        assert outcome.ok is False
        assert (tmp_path / "baseline" / "playwright" / "home.png").read_bytes() == image.read_bytes()

    def test_revert_restores_image_accepted_at_commit_not_latest_capture(
        self, ledger: DecisionLedger, tmp_path: Path, make_png
    ):
        capture = tmp_path / "compare" / "feature-x" / "playwright" / "home.png"
        blue = make_png(capture, color=(0, 0, 255, 255)).read_bytes()
        ledger.upsert({"home": accept()}, commit("aaa"), images={"home": capture})
        make_png(capture, color=(255, 0, 0, 255))

        outcome = ledger.apply_revert(ledger.revert("aaa"), BaselineManager())

        assert outcome.ok is True
        assert (tmp_path / "baseline" / "playwright" / "home.png").read_bytes() == blue

    def test_apply_revert_delegates_to_baseline_manager(self, ledger: DecisionLedger):
        manager = Mock(spec=BaselineManager)
        manager.update_baseline.return_value = True
        plan = RevertPlan(
            short_sha="aaa",
            branch="feature/x",
            targets=[RevertTarget(name="home", source_path="c/home.png", baseline_path="b/home.png")],
        )

        outcome = ledger.apply_revert(plan, manager)

        manager.update_baseline.assert_called_once_with("c/home.png", "b/home.png")
        assert outcome.ok is True
        assert outcome.restored == ["home"]


class TestFromConfig:
    def test_paths_from_config(self, vr_config):
        ledger = DecisionLedger.from_config(vr_config)
        assert ledger.history_store.path == vr_config.history_path
        assert ledger.approvals_store.path == vr_config.approvals_path
        assert ledger.max_history == vr_config.max_history
        assert ledger.history_store.lock_timeout == vr_config.lock_timeout_seconds

    def test_rejects_zero_max_history(self, history_store, approvals_store):
        with pytest.raises(ValueError):
            DecisionLedger(history_store, approvals_store, max_history=0)
