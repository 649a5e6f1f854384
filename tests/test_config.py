from pathlib import Path

import pytest

from trixie_setup.config import AppConfig, TargetUser, resolve_target_user
from trixie_setup.errors import ConfigurationError


def test_defaults_to_root_without_sudo():
    user = resolve_target_user(environ={})
    assert user == TargetUser(name="root", home=Path("/root"))


def test_sudo_user_root_maps_to_root_home():
    assert resolve_target_user(environ={"SUDO_USER": "root"}).home == Path("/root")


def test_explicit_user_wins_over_sudo_user():
    user = resolve_target_user("root", environ={"SUDO_USER": "no-such-user-trixie"})
    assert user.name == "root"
    assert user.uid == 0


@pytest.mark.parametrize(
    "explicit, environ",
    [("no-such-user-trixie", {}), (None, {"SUDO_USER": "no-such-user-trixie"})],
)
def test_unknown_user_is_a_configuration_error(explicit, environ):
    with pytest.raises(ConfigurationError):
        resolve_target_user(explicit, environ=environ)


def test_paths_derive_from_target_home(target):
    config = AppConfig(TARGET=target)
    assert config.BASHRC == target.home / ".bashrc"
    assert config.YTDLP_CONFIG_FILE == target.home / ".config" / "yt-dlp" / "config"


def test_repository_paths(config):
    repo = config.EXTERNAL_REPOS[0]
    assert config.keyring_path(repo) == config.KEYRING_DIR / "google-chrome-archive-keyring.gpg"
    assert config.list_path(repo) == config.SOURCES_DIR / "google-chrome.list"
