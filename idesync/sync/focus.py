"""
Raising editor windows.

Each strategy wraps one OS mechanism (Aerospace, AppleScript, wmctrl, ...)
and reports whether it managed to focus something. WindowFocuser tries them
in order; the first success wins. Failures are cosmetic and only logged.
"""

import asyncio
import logging
import os
import re
import shutil
from typing import Optional, Protocol, Sequence

from idesync.config import (
    CODE_APPS,
    CODE_BUNDLE_IDS,
    JETBRAINS_APPS,
    JETBRAINS_BUNDLE_IDS,
    PLATFORM,
)

logger = logging.getLogger(__name__)

_WINDOW_LINE = re.compile(r"^(\S+)\s+(\S+)\s+(\S+)\s+(.+)$")


async def _run(*args: str, timeout: float = 5.0) -> tuple[int, str]:
    proc = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        return -1, ""
    return proc.returncode, stdout.decode("utf-8", errors="replace")


def _project_name(hint: Optional[str]) -> str:
    return os.path.basename(hint.rstrip("/\\")) if hint else ""


class FocusStrategy(Protocol):
    name: str

    async def try_focus(self, hint: Optional[str]) -> bool: ...


class AerospaceStrategy:
    """Focus through the Aerospace tiling window manager, switching workspace first."""
    name = "aerospace"

    def __init__(self, bundle_ids: Sequence[str]) -> None:
        self._bundle_ids = list(bundle_ids)

    def _matches(self, bundle_id: str) -> bool:
        return any(bundle_id.startswith(b) for b in self._bundle_ids)

    async def try_focus(self, hint: Optional[str]) -> bool:
        if shutil.which("aerospace") is None:
            return False

        code, output = await _run(
            "aerospace", "list-windows", "--all",
            "--format", "%{window-id} %{workspace} %{app-bundle-id} %{window-title}",
        )
        windows = []
        if code == 0:
            for line in output.splitlines():
                match = _WINDOW_LINE.match(line.strip())
                if match and self._matches(match.group(3)):
                    windows.append(match.groups())
        logger.debug(f"Aerospace: {len(windows)} candidate window(s)")

        project = _project_name(hint).lower()
        target = next((w for w in windows if project and project in w[3].lower()), None)
        if target is None and windows:
            target = windows[0]

        if target:
            window_id, workspace, _, title = target
            await _run("aerospace", "workspace", workspace)
            await asyncio.sleep(0.15)
            code, _ = await _run("aerospace", "focus", "--window-id", window_id)
            if code == 0:
                logger.info(f"Aerospace focused window {window_id} in workspace {workspace} - {title}")
                return True

        for bundle_id in self._bundle_ids:
            code, _ = await _run("aerospace", "focus", "--app-bundle-id", bundle_id)
            if code == 0:
                logger.info(f"Aerospace focused app {bundle_id}")
                return True
        return False


class AppleScriptStrategy:
    """``tell application X to activate`` plus System Events frontmost."""
    name = "applescript"

    def __init__(self, app_names: Sequence[str]) -> None:
        self._app_names = list(app_names)

    async def try_focus(self, hint: Optional[str]) -> bool:
        if shutil.which("osascript") is None:
            return False
        for app in self._app_names:
            code, _ = await _run("osascript", "-e", f'tell application "{app}" to activate')
            if code != 0:
                continue
            await _run(
                "osascript", "-e",
                f'tell application "System Events" to tell process "{app}" to set frontmost to true',
            )
            logger.info(f"AppleScript activated {app}")
            return True
        return False


class WmctrlStrategy:
    """X11 fallback: activate the first window whose title contains the project or app name."""
    name = "wmctrl"

    def __init__(self, app_names: Sequence[str]) -> None:
        self._app_names = list(app_names)

    async def try_focus(self, hint: Optional[str]) -> bool:
        if shutil.which("wmctrl") is None:
            return False
        needles = [n for n in (_project_name(hint), *self._app_names) if n]
        for needle in needles:
            code, _ = await _run("wmctrl", "-a", needle)
            if code == 0:
                logger.info(f"wmctrl activated window matching {needle!r}")
                return True
        return False


class WindowFocuser:
    """Ordered list of focus strategies behind one call."""

    def __init__(self, strategies: Sequence[FocusStrategy] = ()) -> None:
        self._strategies = list(strategies)

    @property
    def strategies(self) -> list[FocusStrategy]:
        return list(self._strategies)

    async def bring_to_front(self, hint: Optional[str] = None) -> bool:
        for strategy in self._strategies:
            try:
                if await strategy.try_focus(hint):
                    return True
            except OSError as e:
                logger.warning(f"Focus strategy {strategy.name} failed: {e}")
        if self._strategies:
            logger.info(f"All focus strategies failed (hint={hint})")
        return False


def build_focuser(app_names: Sequence[str], bundle_ids: Sequence[str], platform: str = PLATFORM) -> WindowFocuser:
    if platform == "darwin":
        return WindowFocuser([AerospaceStrategy(bundle_ids), AppleScriptStrategy(app_names)])
    if platform == "linux":
        return WindowFocuser([WmctrlStrategy(app_names)])
    return WindowFocuser()


def default_focusers(role: str, platform: str = PLATFORM) -> tuple[WindowFocuser, WindowFocuser]:
    """Return ``(local, peer)`` focusers: the host pairs a code editor with a JetBrains IDE."""
    code = build_focuser(CODE_APPS, CODE_BUNDLE_IDS, platform)
    jetbrains = build_focuser(JETBRAINS_APPS, JETBRAINS_BUNDLE_IDS, platform)
    return (code, jetbrains) if role == "host" else (jetbrains, code)
