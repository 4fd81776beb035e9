"""Tests for client detection and default config paths."""
from __future__ import annotations

from pathlib import Path

import pytest

from mcphubctl.detect import CLIENT_PATHS, default_config_path, detect_clients
from mcphubctl.models import ClientKind


def test_every_concrete_kind_has_a_path_rule() -> None:
    """All kinds except ``custom`` appear in the path table."""
    missing = [kind for kind in ClientKind if kind not in CLIENT_PATHS]

    assert missing == [ClientKind.CUSTOM]


@pytest.mark.parametrize(
    ("platform", "env", "expected"),
    [
        ("linux", {}, ".config/Claude/claude_desktop_config.json"),
        ("linux", {"XDG_CONFIG_HOME": "{home}/xdg"}, "xdg/Claude/claude_desktop_config.json"),
        ("darwin", {}, "Library/Application Support/Claude/claude_desktop_config.json"),
        ("win32", {"APPDATA": "{home}/Roaming"}, "Roaming/Claude/claude_desktop_config.json"),
    ],
)
def test_app_config_base_per_platform(
    tmp_path: Path, platform: str, env: dict[str, str], expected: str
) -> None:
    """Application-config clients resolve under the platform's config dir."""
    resolved_env = {key: value.format(home=tmp_path) for key, value in env.items()}

    path = default_config_path(
        ClientKind.CLAUDE_DESKTOP, platform=platform, home=tmp_path, env=resolved_env
    )

    assert path == tmp_path / expected


def test_home_relative_and_platform_specific_rules(tmp_path: Path) -> None:
    """Home-relative clients ignore the platform; some kinds vary by OS."""
    assert default_config_path(ClientKind.CURSOR, platform="darwin", home=tmp_path, env={}) == (
        tmp_path / ".cursor" / "mcp.json"
    )
    assert default_config_path(ClientKind.OPENAI_CODEX, home=tmp_path, env={}) == (
        tmp_path / ".codex" / "config.toml"
    )
    assert default_config_path(ClientKind.ZED, platform="linux", home=tmp_path, env={}) == (
        tmp_path / ".config" / "zed" / "settings.json"
    )
    assert (
        default_config_path(ClientKind.VISUAL_STUDIO, platform="linux", home=tmp_path, env={})
        is None
    )
    assert default_config_path(ClientKind.WARP, home=tmp_path, env={}) is None
    assert default_config_path(ClientKind.CUSTOM, home=tmp_path, env={}) is None


def test_detect_reports_existing_configs(tmp_path: Path) -> None:
    """Existing files are found; a bare parent directory means installed."""
    cursor = tmp_path / ".cursor" / "mcp.json"
    cursor.parent.mkdir()
    cursor.write_text("{}")
    (tmp_path / ".kiro" / "settings").mkdir(parents=True)

    def resolver(kind: ClientKind) -> Path | None:
        return default_config_path(kind, platform="linux", home=tmp_path, env={})

    results = {
        item.client_kind: item
        for item in detect_clients(
            kinds=[ClientKind.CURSOR, ClientKind.KIRO, ClientKind.AMP, ClientKind.WARP],
            resolver=resolver,
        )
    }

    assert ClientKind.WARP not in results
    assert results[ClientKind.CURSOR].has_config is True
    assert results[ClientKind.KIRO].has_config is False
    assert results[ClientKind.KIRO].installed is True
    assert results[ClientKind.AMP].installed is False


def test_detect_survives_probe_errors(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing probe marks one client as absent without aborting."""
    broken = tmp_path / "broken" / "mcp.json"
    fine = tmp_path / "fine.json"
    fine.write_text("{}")
    original = Path.is_file

    def flaky_is_file(self: Path) -> bool:
        if self == broken:
            raise PermissionError("denied")
        return original(self)

    monkeypatch.setattr(Path, "is_file", flaky_is_file)
    paths = {ClientKind.CURSOR: broken, ClientKind.AMP: fine}

    results = detect_clients(kinds=list(paths), resolver=paths.get)

    assert [(item.client_kind, item.has_config) for item in results] == [
        (ClientKind.CURSOR, False),
        (ClientKind.AMP, True),
    ]
