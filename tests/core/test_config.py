"""
Tests for settings loading: YAML files, lookup order and environment flags.
"""
from pathlib import Path

import pytest

from chrootenv.core import config
from chrootenv.core.config import (
    DEFAULT_CONFIG_PATH,
    ChrootEnvSettings,
    GroupMappingConfig,
    default_mounts,
    load_settings,
)
from chrootenv.core.errors import PreconditionError


@pytest.fixture
def no_config_files(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Point both lookup locations at files that don't exist."""
    monkeypatch.setattr(config, "SYSTEM_CONFIG_PATH", tmp_path / "etc.yaml")
    monkeypatch.setattr(config, "DEFAULT_CONFIG_PATH", tmp_path / "default.yaml")


@pytest.fixture
def write_config(tmp_path: Path):
    def _write(text: str) -> Path:
        path = tmp_path / "chrootenv.yaml"
        path.write_text(text)
        return path
    return _write


class TestDefaults:
    """Built-in defaults."""

    def test_no_file_gives_defaults(self, no_config_files: None) -> None:
        """Without any config file the built-in defaults apply."""
        settings = load_settings()
        assert settings.chroots_dir == "/usr/local/chroots"
        assert settings.setup_script == "/prepare.sh"
        assert settings.setup_max_passes is None
        assert settings.no_unmount is False
        assert settings.weak_random is False

    def test_default_mount_order(self) -> None:
        """Devices first, /var/run tmpfs before anything beneath it."""
        targets = [m.target for m in default_mounts()]
        assert targets[:3] == ["/dev", "/dev/pts", "/dev/shm"]
        assert targets.index("/var/run") < targets.index("/var/run/lock")
        assert targets.index("/tmp") < targets.index("/var/run")
        assert targets.index("/sys") < targets.index("/var/run")

    def test_tmp_remounted_exec(self) -> None:
        """/tmp is remounted exec inside the chroot."""
        tmp = next(m for m in default_mounts() if m.target == "/tmp")
        assert tmp.remount_options == ["exec"]

    def test_shipped_config_matches_defaults(self) -> None:
        """The shipped YAML describes the same plan as the built-in defaults."""
        shipped = load_settings(DEFAULT_CONFIG_PATH)
        assert shipped.mounts == ChrootEnvSettings().mounts
        assert [g.guest for g in shipped.group_mappings] == ["audio", "video", "input", "cras"]

    def test_shipped_config_inside_package(self) -> None:
        """The default file lives in the package so installs carry it."""
        package_dir = Path(config.__file__).resolve().parent.parent
        assert DEFAULT_CONFIG_PATH.resolve().is_relative_to(package_dir)
        assert DEFAULT_CONFIG_PATH.is_file()


class TestYaml:
    """Values from a YAML file."""

    def test_overrides(self, write_config) -> None:
        """Keys in the file override defaults; others keep theirs."""
        path = write_config(
            "chroots_dir: /srv/chroots\n"
            "setup_max_passes: 4\n"
            "start_dbus: false\n"
            "mounts:\n"
            "  - source: /dev\n"
            "    target: /dev\n"
            "  - kind: tmpfs\n"
            "    target: /var/run\n"
            "group_mappings:\n"
            "  - host: video\n"
            "  - host: snd\n"
            "    guest: audio\n"
        )
        settings = load_settings(path)
        assert settings.chroots_dir == "/srv/chroots"
        assert settings.setup_max_passes == 4
        assert settings.start_dbus is False
        assert settings.run_rc_local is True
        assert [m.target for m in settings.mounts] == ["/dev", "/var/run"]
        assert [(g.host, g.guest) for g in settings.group_mappings] == [
            ("video", "video"),
            ("snd", "audio"),
        ]

    def test_empty_file(self, write_config) -> None:
        """An empty file means defaults."""
        assert load_settings(write_config("")).chroots_dir == "/usr/local/chroots"

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """An explicitly named file must exist."""
        with pytest.raises(PreconditionError, match="not found"):
            load_settings(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, write_config) -> None:
        """Unparseable YAML is a precondition error."""
        with pytest.raises(PreconditionError, match="Failed to parse"):
            load_settings(write_config("mounts: [unclosed\n"))

    def test_not_a_mapping(self, write_config) -> None:
        """The top level must be a mapping."""
        with pytest.raises(PreconditionError, match="mapping"):
            load_settings(write_config("- /dev\n- /proc\n"))

    def test_invalid_mount(self, write_config) -> None:
        """Mount validation errors surface as precondition errors."""
        path = write_config("mounts:\n  - source: /dev\n    target: dev\n")
        with pytest.raises(PreconditionError, match="Invalid configuration"):
            load_settings(path)

    def test_invalid_max_passes(self, write_config) -> None:
        """setup_max_passes must be positive."""
        with pytest.raises(PreconditionError):
            load_settings(write_config("setup_max_passes: 0\n"))


class TestLookupOrder:
    """Where settings come from."""

    def test_env_config_path(
        self, monkeypatch: pytest.MonkeyPatch, no_config_files: None, write_config
    ) -> None:
        """CHROOTENV_CONFIG names the file to load."""
        path = write_config("chroots_dir: /from/env\n")
        monkeypatch.setenv("CHROOTENV_CONFIG", str(path))
        assert load_settings().chroots_dir == "/from/env"

    def test_system_file_before_default(
        self, monkeypatch: pytest.MonkeyPatch, tmp_path: Path
    ) -> None:
        """/etc/chrootenv wins over the project default."""
        system = tmp_path / "system.yaml"
        system.write_text("chroots_dir: /from/system\n")
        default = tmp_path / "default.yaml"
        default.write_text("chroots_dir: /from/default\n")
        monkeypatch.setattr(config, "SYSTEM_CONFIG_PATH", system)
        monkeypatch.setattr(config, "DEFAULT_CONFIG_PATH", default)
        assert load_settings().chroots_dir == "/from/system"


class TestEnvironmentFlags:
    """Environment flags applied on top of the file."""

    def test_flags(self, monkeypatch: pytest.MonkeyPatch, no_config_files: None) -> None:
        """Non-empty flags switch the settings on."""
        monkeypatch.setenv("CHROOTENV_NO_UNMOUNT", "1")
        monkeypatch.setenv("CHROOTENV_WEAK_RANDOM", "yes")
        monkeypatch.setenv("CHROOTENV_CHROOTS_DIR", "/mnt/stateful/chroots")
        settings = load_settings()
        assert settings.no_unmount is True
        assert settings.weak_random is True
        assert settings.chroots_dir == "/mnt/stateful/chroots"

    def test_empty_flags_ignored(self, monkeypatch: pytest.MonkeyPatch, no_config_files: None) -> None:
        """Empty values leave the settings alone."""
        monkeypatch.setenv("CHROOTENV_NO_UNMOUNT", "")
        assert load_settings().no_unmount is False


class TestGroupMappingConfig:
    """Group table entries."""

    def test_guest_defaults_to_host(self) -> None:
        """An omitted guest name is the host name."""
        assert GroupMappingConfig(host="video").guest == "video"

    def test_explicit_guest(self) -> None:
        """An explicit guest name is kept."""
        assert GroupMappingConfig(host="snd", guest="audio").guest == "audio"
