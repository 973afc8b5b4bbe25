#!/usr/bin/env python3
"""Release deployn8n: run unit tests, bump version, tag, push, publish to PyPI.

Usage:
    uv run publish.py patch
    uv run publish.py minor
    uv run publish.py major
"""

import re
import subprocess
import sys
from pathlib import Path

PARTS = ("major", "minor", "patch")
VERSION_RE = re.compile(r'^version = "(\d+)\.(\d+)\.(\d+)"', re.MULTILINE)


def run(cmd: str) -> None:
    print(f"$ {cmd}")
    result = subprocess.run(cmd, shell=True)
    if result.returncode != 0:
        sys.exit(result.returncode)


def bump(version: tuple[int, int, int], part: str) -> tuple[int, int, int]:
    major, minor, patch = version
    if part == "major":
        return major + 1, 0, 0
    if part == "minor":
        return major, minor + 1, 0
    return major, minor, patch + 1


def main():
    if len(sys.argv) != 2 or sys.argv[1] not in PARTS:
        print(f"Usage: uv run publish.py [{'|'.join(PARTS)}]")
        sys.exit(1)

    dirty = subprocess.run(
        "git status --porcelain", shell=True, capture_output=True, text=True
    ).stdout.strip()
    if dirty:
        print("Working tree has uncommitted changes; commit or stash them first")
        sys.exit(1)

    run("uv run pytest -q")

    pyproject = Path("pyproject.toml")
    text = pyproject.read_text()
    match = VERSION_RE.search(text)
    if not match:
        print("Could not find version in pyproject.toml")
        sys.exit(1)

    current = tuple(int(g) for g in match.groups())
    new_version = ".".join(str(n) for n in bump(current, sys.argv[1]))
    pyproject.write_text(text.replace(match.group(0), f'version = "{new_version}"'))
    print(f"Version bumped to {new_version}")

    run(f'git add pyproject.toml && git commit -m "Release deployn8n {new_version}"')
    run(f"git tag v{new_version}")
    run("git push --follow-tags")
    run("uv build")
    run(f"uv publish dist/deployn8n-{new_version}*")


if __name__ == "__main__":
    main()
