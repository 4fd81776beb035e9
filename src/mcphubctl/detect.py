"""Detect client applications from their conventional config locations.

Detection is read-only. Every candidate path is probed independently: an
unreadable directory or a permission error on one client never stops the
others from being reported.
"""
from __future__ import annotations

import logging
import os
import sys
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path

from .models import ClientKind, DetectedClient

_log = logging.getLogger("mcphubctl.detect")

# Each rule is (base, relative path) where base is "home" or "config"; the
# config base is the per-user application config directory of the platform.
PathRule = tuple[str, str]

_VSCODE_STORAGE = "Code/User/globalStorage"


def _home(relative: str) -> dict[str, PathRule | None]:
    return {"*": ("home", relative)}


def _app(relative: str) -> dict[str, PathRule | None]:
    return {"*": ("config", relative)}


CLIENT_PATHS: dict[ClientKind, Mapping[str, PathRule | None]] = {
    ClientKind.CLAUDE_DESKTOP: _app("Claude/claude_desktop_config.json"),
    ClientKind.CLAUDE_CODE: _home(".claude.json"),
    ClientKind.CURSOR: _home(".cursor/mcp.json"),
    ClientKind.WINDSURF: _home(".codeium/windsurf/mcp_config.json"),
    ClientKind.VSCODE: _app("Code/User/mcp.json"),
    ClientKind.VSCODE_INSIDERS: _app("Code - Insiders/User/mcp.json"),
    ClientKind.ZED: {
        "win32": ("config", "Zed/settings.json"),
        "*": ("home", ".config/zed/settings.json"),
    },
    ClientKind.CONTINUE: _home(".continue/config.json"),
    ClientKind.CODY: _app(f"{_VSCODE_STORAGE}/sourcegraph.cody-ai/cody_mcp_settings.json"),
    ClientKind.CLINE: _app(
        f"{_VSCODE_STORAGE}/saoudrizwan.claude-dev/settings/cline_mcp_settings.json"
    ),
    ClientKind.ROO_CODE: _app(
        f"{_VSCODE_STORAGE}/rooveterinaryinc.roo-cline/settings/cline_mcp_settings.json"
    ),
    ClientKind.KILO_CODE: _app(f"{_VSCODE_STORAGE}/kilocode.kilocode/mcp_settings.json"),
    ClientKind.AMP: _home(".amp/mcp.json"),
    ClientKind.AUGMENT: _app("Code/User/settings.json"),
    ClientKind.ANTIGRAVITY: _home(".gemini/antigravity/mcp_config.json"),
    ClientKind.JETBRAINS: _home(".junie/mcp/mcp.json"),
    ClientKind.GEMINI_CLI: _home(".gemini/settings.json"),
    ClientKind.QWEN_CODER: _home(".qwen-coder/mcp.json"),
    ClientKind.OPENCODE: _home(".opencode/mcp.json"),
    ClientKind.OPENAI_CODEX: _home(".codex/config.toml"),
    ClientKind.KIRO: _home(".kiro/settings/mcp.json"),
    ClientKind.TRAE: _home(".trae/mcp.json"),
    ClientKind.LM_STUDIO: _app("LM Studio/mcp.json"),
    ClientKind.VISUAL_STUDIO: {
        "win32": ("config", "Microsoft/VisualStudio/mcp.json"),
        "*": None,
    },
    ClientKind.CRUSH: _home(".crush/mcp.json"),
    ClientKind.BOLTAI: _app("BoltAI/mcp.json"),
    ClientKind.ROVO_DEV: _home(".rovo/mcp.json"),
    ClientKind.ZENCODER: _home(".zencoder/mcp.json"),
    ClientKind.QODO_GEN: _app(f"{_VSCODE_STORAGE}/qodo-ai.qodo-gen/mcp_settings.json"),
    ClientKind.PERPLEXITY: _app("Perplexity/mcp.json"),
    ClientKind.FACTORY: _home(".factory/mcp.json"),
    ClientKind.EMDASH: _home(".emdash/mcp.json"),
    ClientKind.AMAZON_Q: _home(".aws/amazonq/mcp.json"),
    # Warp keeps MCP settings in Warp Drive, there is no local file.
    ClientKind.WARP: {"*": None},
    ClientKind.COPILOT_AGENT: _home(".github/copilot/mcp.json"),
    ClientKind.COPILOT_CLI: _home(".github/copilot-cli/mcp.json"),
    ClientKind.SMITHERY: _home(".smithery/mcp.json"),
}


def _platform_family(platform: str | None) -> str:
    value = (platform or sys.platform).lower()
    if value.startswith("win"):
        return "win32"
    if value in {"darwin", "macos"}:
        return "darwin"
    return "linux"


def _config_base(family: str, home: Path, env: Mapping[str, str]) -> Path:
    if family == "darwin":
        return home / "Library" / "Application Support"
    if family == "win32":
        appdata = env.get("APPDATA")
        return Path(appdata) if appdata else home / "AppData" / "Roaming"
    xdg = env.get("XDG_CONFIG_HOME")
    return Path(xdg) if xdg else home / ".config"


def default_config_path(
    kind: ClientKind,
    *,
    platform: str | None = None,
    home: Path | None = None,
    env: Mapping[str, str] | None = None,
) -> Path | None:
    """Return the conventional config file for *kind* on *platform*.

    ``custom`` and clients without a local config file return ``None``.
    """
    rules = CLIENT_PATHS.get(kind)
    if rules is None:
        return None
    family = _platform_family(platform)
    rule = rules[family] if family in rules else rules.get("*")
    if rule is None:
        return None
    resolved_env = os.environ if env is None else env
    home_dir = home if home is not None else Path(resolved_env.get("HOME") or Path.home())
    base_name, relative = rule
    base = home_dir if base_name == "home" else _config_base(family, home_dir, resolved_env)
    return base.joinpath(*relative.split("/"))


def detect_clients(
    *,
    kinds: Iterable[ClientKind] | None = None,
    resolver: Callable[[ClientKind], Path | None] | None = None,
) -> list[DetectedClient]:
    """Probe each client kind's default location and report what exists."""
    resolve = resolver or default_config_path
    candidates = list(kinds) if kinds is not None else [
        kind for kind in ClientKind if kind is not ClientKind.CUSTOM
    ]
    results: list[DetectedClient] = []
    for kind in candidates:
        path = resolve(kind)
        if path is None:
            continue
        results.append(_probe(kind, path))
    return results


def _probe(kind: ClientKind, path: Path) -> DetectedClient:
    try:
        has_config = path.is_file()
    except OSError as exc:
        _log.debug("Cannot probe %s for %s: %s", path, kind.value, exc)
        has_config = False
    try:
        installed = has_config or path.parent.is_dir()
    except OSError:
        installed = False
    return DetectedClient(
        client_kind=kind, config_path=path, has_config=has_config, installed=installed
    )


__all__ = ["CLIENT_PATHS", "default_config_path", "detect_clients"]
