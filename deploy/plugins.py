import logging
import os
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

SCALE_HOOK = Path("hooks") / "scale-change"


def installed_plugins(plugins_dir) -> list[Path]:
    plugins_dir = Path(plugins_dir)
    if not plugins_dir.is_dir():
        return []
    return sorted(p for p in plugins_dir.iterdir() if p.is_dir())


def notify_scale_change(plugins_dir, app_name: str, process_type: str, timeout: int = 30) -> int:
    """Run every plugin's scale-change hook. Exit status and failures are ignored.

    Returns the number of hooks invoked.
    """
    invoked = 0
    for plugin_dir in installed_plugins(plugins_dir):
        hook = plugin_dir / SCALE_HOOK
        if not hook.is_file() or not os.access(hook, os.X_OK):
            continue

        invoked += 1
        logger.debug(f"  $ {hook} {app_name} {process_type}")
        try:
            result = subprocess.run(
                [str(hook), app_name, process_type],
                capture_output=True,
                text=True,
                timeout=timeout,
            )
            if result.returncode != 0:
                logger.warning(
                    f"  Plugin {plugin_dir.name} scale hook exited {result.returncode}: "
                    f"{result.stderr.strip()}"
                )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"  Plugin {plugin_dir.name} scale hook failed: {e}")
    return invoked
