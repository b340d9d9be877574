"""
Lua scripts for atomic counter-store operations
"""
from pathlib import Path

SCRIPT_DIR = Path(__file__).parent


def load_script(name: str) -> str:
    """Read a bundled Lua script by name, without the .lua suffix"""
    script_path = SCRIPT_DIR / f"{name}.lua"
    with open(script_path, "r", encoding="utf-8") as f:
        return f.read()
