"""External editor integration for the branchchat CLI.

Used by ``chat edit`` when no replacement text is given on the command line:
the message is written to a draft file, opened in the user's editor, and the
saved text is read back.
"""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Optional

from branchchat.config import settings
from cli.context import load_context


def get_editor_command() -> str:
    """Determine the editor command to use."""
    ctx = load_context()

    # 1. User preference from context.json
    if "editor" in ctx.user_preferences:
        return ctx.user_preferences["editor"]

    # 2. Environment variable
    if "EDITOR" in os.environ:
        return os.environ["EDITOR"]

    # 3. Platform defaults
    if os.name == "nt":
        if shutil.which("code"):
            return "code -w"
        return "notepad"
    if shutil.which("vim"):
        return "vim"
    if shutil.which("nano"):
        return "nano"
    return "vi"


def edit_text(initial: str, draft_name: str, extension: str = ".md") -> Optional[str]:
    """Open *initial* in an external editor.

    Returns the edited text, or ``None`` if the editor failed or nothing
    changed.
    """
    drafts_dir = settings.cli_config_dir / "drafts"
    drafts_dir.mkdir(parents=True, exist_ok=True)

    draft_file = drafts_dir / f"{draft_name}{extension}"
    draft_file.write_text(initial, encoding="utf-8")

    # Shell=True to handle spaces in command (e.g. "code -w")
    ret = subprocess.call(f'{get_editor_command()} "{draft_file}"', shell=True)
    if ret != 0:
        print(f"⚠️ Editor exited with code {ret}")
        return None

    new_content = draft_file.read_text(encoding="utf-8")
    draft_file.unlink(missing_ok=True)
    if new_content.strip() == initial.strip():
        return None
    return new_content
