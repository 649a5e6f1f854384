import shlex

import pytest

from trixie_setup.config import ExternalRepo
from trixie_setup.errors import ConfigurationError
from trixie_setup.templating import (
    BLOCK_BEGIN,
    BLOCK_END,
    add_component,
    apply_managed_block,
    component_missing,
    has_managed_block,
    render_alias,
    render_bashrc_block,
    render_repo_line,
    render_ytdlp_config,
)

SOURCES_LIST = """\
# Debian trixie
deb http://deb.debian.org/debian/ trixie main contrib non-free
deb-src http://deb.debian.org/debian/ trixie main contrib non-free  # sources

deb http://security.debian.org/debian-security trixie-security main non-free-firmware
#deb http://example.org/debian trixie main
deb [arch=amd64 signed-by=/usr/share/keyrings/x.gpg] http://x.example/debian stable main
"""

DEB822 = """\
Types: deb deb-src
URIs: http://deb.debian.org/debian/
Suites: trixie trixie-updates
Components: main contrib
Signed-By: /usr/share/keyrings/debian-archive-keyring.gpg
"""


# ----------------------------------------------------------------
# APT sources
# ----------------------------------------------------------------
def test_component_added_to_one_line_sources():
    updated = add_component(SOURCES_LIST, "non-free-firmware")
    lines = updated.splitlines()

    assert lines[1].endswith("main contrib non-free non-free-firmware")
    assert lines[2] == (
        "deb-src http://deb.debian.org/debian/ trixie main contrib non-free "
        "non-free-firmware # sources"
    )
    assert lines[4].count("non-free-firmware") == 1
    assert lines[5] == "#deb http://example.org/debian trixie main"
    assert lines[6].endswith("stable main non-free-firmware")


def test_component_addition_is_idempotent_one_line():
    once = add_component(SOURCES_LIST, "non-free-firmware")
    assert add_component(once, "non-free-firmware") == once
    assert component_missing(SOURCES_LIST, "non-free-firmware")
    assert not component_missing(once, "non-free-firmware")


def test_component_addition_is_idempotent_deb822():
    once = add_component(DEB822, "non-free-firmware", deb822=True)
    assert "Components: main contrib non-free-firmware\n" in once
    assert add_component(once, "non-free-firmware", deb822=True) == once
    assert not component_missing(once, "non-free-firmware", deb822=True)


def test_line_without_main_is_left_alone():
    text = "deb http://download.virtualbox.org/virtualbox/debian trixie contrib\n"
    assert add_component(text, "non-free-firmware") == text


def test_repo_line():
    repo = ExternalRepo(
        name="google-chrome",
        key_url="https://example.invalid/key.pub",
        repo_url="http://dl.google.com/linux/chrome/deb/ stable main",
        list_file="google-chrome.list",
        package="google-chrome-stable",
    )
    assert render_repo_line(repo, "/usr/share/keyrings/google-chrome.gpg") == (
        "deb [arch=amd64 signed-by=/usr/share/keyrings/google-chrome.gpg] "
        "http://dl.google.com/linux/chrome/deb/ stable main\n"
    )


# ----------------------------------------------------------------
# yt-dlp config
# ----------------------------------------------------------------
def test_ytdlp_config_values_survive_shell_splitting():
    output = "~/Downloads/YouTube/%(uploader)s/%(title)s [%(id)s].%(ext)s"
    fmt = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best"
    tricky = "it's a \"quoted\" $HOME value"
    text = render_ytdlp_config([("-f", fmt), ("-o", output), ("--match-title", tricky), ("--no-mtime", "")])

    options = [line for line in text.splitlines() if line and not line.startswith("#")]
    assert shlex.split(options[0]) == ["-f", fmt]
    assert shlex.split(options[1]) == ["-o", output]
    assert shlex.split(options[2]) == ["--match-title", tricky]
    assert options[3] == "--no-mtime"


def test_ytdlp_config_rejects_non_flags():
    with pytest.raises(ConfigurationError):
        render_ytdlp_config([("format", "best")])


# ----------------------------------------------------------------
# Shell configuration block
# ----------------------------------------------------------------
def test_alias_quoting():
    line = render_alias("sshkey", 'ssh-keygen -t ed25519 -C "$(whoami)@$(hostname)"')
    assert line.startswith("alias sshkey=")
    assert shlex.split(line.split("=", 1)[1]) == ['ssh-keygen -t ed25519 -C "$(whoami)@$(hostname)"']


@pytest.mark.parametrize("name", ["", "bad name", "x;rm", "a=b"])
def test_invalid_alias_names_are_rejected(name):
    with pytest.raises(ConfigurationError):
        render_alias(name, "true")


def test_bashrc_block_layout():
    block = render_bashrc_block({"ll": "ls -alF", "top": "btop"}, ["export EDITOR=nano"])
    lines = block.splitlines()
    assert lines[0] == BLOCK_BEGIN
    assert lines[1] == "alias ll='ls -alF'"
    assert lines[2] == "alias top=btop"
    assert lines[-2] == "export EDITOR=nano"
    assert lines[-1] == BLOCK_END
    assert block.endswith("\n")


def test_managed_block_replaced_not_duplicated():
    original = "# ~/.bashrc\nexport PS1='$ '\n"
    first = apply_managed_block(original, render_bashrc_block({"ll": "ls -alF"}))
    second_block = render_bashrc_block({"ll": "ls -alF", "la": "ls -A"})
    second = apply_managed_block(first, second_block)

    assert second.startswith(original)
    assert second.count(BLOCK_BEGIN) == 1
    assert "alias la='ls -A'" in second
    assert has_managed_block(second, second_block)
    assert apply_managed_block(second, second_block) == second


def test_legacy_block_is_migrated_in_place():
    legacy = (
        "# ~/.bashrc\n"
        "# --- Added by Post-Install Script (Advanced Admin Setup) ---\n"
        "alias ll='ls -alF'\n"
        "# --- End Post-Install Aliases ---\n"
        "export TAIL=1\n"
    )
    block = render_bashrc_block({"ll": "ls -alF"})
    assert not has_managed_block(legacy, block)

    migrated = apply_managed_block(legacy, block)
    assert "Post-Install Script" not in migrated
    assert migrated == "# ~/.bashrc\n" + block + "export TAIL=1\n"
    assert has_managed_block(migrated, block)


def test_block_appended_to_file_without_trailing_newline():
    block = render_bashrc_block({"ll": "ls -alF"})
    assert apply_managed_block("export A=1", block) == "export A=1\n\n" + block
    assert apply_managed_block("", block) == block


def test_legacy_block_after_managed_block_is_removed():
    block = render_bashrc_block({"ll": "ls -alF"})
    mixed = (
        "# ~/.bashrc\n"
        + block
        + "export TAIL=1\n"
        "# --- Added by Post-Install Script (Advanced Admin Setup) ---\n"
        "alias ll='ls -alF'\n"
        "# --- End Post-Install Aliases ---\n"
    )
    assert not has_managed_block(mixed, block)

    cleaned = apply_managed_block(mixed, block)
    assert cleaned == "# ~/.bashrc\n" + block + "export TAIL=1\n"
    assert has_managed_block(cleaned, block)
    assert apply_managed_block(cleaned, block) == cleaned
