"""
Module State Journal Tests
"""
import pytest

from outpost.errors import JournalError
from outpost.fsutil import content_hash
from outpost.reconciler.journal import (
    ModuleStateJournal,
    module_dirname,
    parse_module_dirname,
    split_fullname,
)


class TestNames:
    """Fullname and directory name helpers."""

    def test_split_fullname(self):
        assert split_fullname("web@1.0.0") == ("web", "1.0.0")
        assert split_fullname("@scope/web@2.1.0") == ("@scope/web", "2.1.0")

    def test_split_fullname_invalid(self):
        for bad in ("web", "web@", "@1.0.0"):
            with pytest.raises(ValueError):
                split_fullname(bad)

    def test_module_dirname(self):
        assert module_dirname("web@1.0.0") == "web-1.0.0"

    def test_parse_module_dirname(self):
        assert parse_module_dirname("web-1.0.0") == "web@1.0.0"
        assert parse_module_dirname("my-web-1.2.3") == "my-web@1.2.3"
        assert parse_module_dirname("web-1.0.0-beta.1") == "web@1.0.0-beta.1"
        assert parse_module_dirname("web") is None
        assert parse_module_dirname("web-1.0") is None


class TestJournal:
    """Reading and writing module state."""

    def test_record_and_load(self, journal):
        journal.record_install("web@1.0.0")
        journal.record_configure("web@1.0.0", {"port": 8080})
        journal.record_started("web@1.0.0", True)

        state = journal.load("web@1.0.0")
        assert set(state) == {"install", "configure", "start"}
        assert state["configure"]["data"] == {"port": 8080}
        assert state["configure"]["hash"] == content_hash({"port": 8080})
        assert journal.load("web@1.0.0", "start")["started"] is True

    def test_state_file_location(self, journal, modules_dir):
        journal.record_install("web@1.0.0")
        assert (modules_dir / "web-1.0.0" / ".outpost" / "state.json").is_file()

    def test_load_missing(self, journal):
        assert journal.load("web@1.0.0") == {}
        assert journal.load("web@1.0.0", "configure") is None

    def test_remove(self, journal):
        journal.record_install("web@1.0.0")
        journal.record_started("web@1.0.0", True)

        journal.remove("web@1.0.0", "start")
        journal.remove("web@1.0.0", "start")

        assert set(journal.load("web@1.0.0")) == {"install"}

    def test_forget(self, journal, modules_dir):
        journal.record_install("web@1.0.0")
        journal.forget("web@1.0.0")
        journal.forget("web@1.0.0")

        assert journal.installed() == {}
        assert (modules_dir / "web-1.0.0").is_dir()

    def test_corrupt_state(self, journal, modules_dir):
        state_dir = modules_dir / "web-1.0.0" / ".outpost"
        state_dir.mkdir(parents=True)
        (state_dir / "state.json").write_text("{oops")

        with pytest.raises(JournalError):
            journal.load("web@1.0.0")
        with pytest.raises(JournalError):
            journal.installed()

    def test_invalid_fullname(self, journal):
        with pytest.raises(JournalError):
            journal.record_install("web")


class TestInstalled:
    """Scanning the modules directory."""

    def test_missing_modules_dir(self, tmp_path):
        assert ModuleStateJournal(tmp_path / "nowhere").installed() == {}

    def test_only_journaled_module_dirs(self, journal, modules_dir):
        journal.record_install("web@1.0.0")
        (modules_dir / "cache").mkdir()
        (modules_dir / "api-2.0.0").mkdir()
        (modules_dir / "notes.txt").write_text("")

        assert list(journal.installed()) == ["web@1.0.0"]

    def test_empty_journal_counts_as_installed(self, journal, modules_dir):
        (modules_dir / "web-1.0.0" / ".outpost").mkdir(parents=True)

        module = journal.installed()["web@1.0.0"]
        assert module.started is False
        assert module.configure is None
        assert module.config_hash is None

    def test_installed_state(self, journal, modules_dir):
        journal.record_install("web@1.0.0")
        journal.record_configure("web@1.0.0", {"port": 8080})
        journal.record_started("web@1.0.0", True)

        module = journal.installed()["web@1.0.0"]
        assert module.directory == modules_dir / "web-1.0.0"
        assert module.started is True
        assert module.config_data == {"port": 8080}
        assert module.config_hash == content_hash({"port": 8080})
        assert module.installed_at is not None

    def test_hash_computed_when_not_stored(self, journal):
        journal.save("web@1.0.0", "configure", {"data": {"port": 8080}})

        module = journal.installed()["web@1.0.0"]
        assert module.config_hash == content_hash({"port": 8080})
