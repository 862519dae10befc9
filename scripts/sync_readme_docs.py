#!/usr/bin/env python3
"""Sync the README.md usage docs with the package docstring.

Renders the module docstring of libs/otel_tools/__init__.py to Markdown,
compares it with the block between the docs markers in README.md, reports
drift, and optionally updates the README in place.

Usage:
    python scripts/sync_readme_docs.py [--fix]

Options:
    --fix       Update the README.md docs block in place.

The README must contain the markers::

    <!-- docs:start -->
    <!-- docs:end -->
"""

import ast
import inspect
import re
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parent.parent
PACKAGE_INIT = REPO_ROOT / "libs" / "otel_tools" / "__init__.py"
README = REPO_ROOT / "README.md"

START_MARKER = "<!-- docs:start -->"
END_MARKER = "<!-- docs:end -->"

# Google-style section header, e.g. "Usage:" at column 0
_SECTION_PATTERN = re.compile(r"^([A-Z][A-Za-z ]*):$")
# Definition list entry, e.g. "OTEL_SERVICE_NAME: Service name."
_TERM_PATTERN = re.compile(r"^(\S[^:\s]*):\s*(.*)$")
# Sections rendered as a Python code block
CODE_SECTIONS = {"Usage", "Example", "Examples"}


def read_docstring(path: Path) -> str:
    """Return the module docstring of path without importing it."""
    module = ast.parse(path.read_text())
    docstring = ast.get_docstring(module, clean=False)
    if not docstring:
        raise ValueError(f"{path} has no module docstring")
    return inspect.cleandoc(docstring)


def _rst_literals(text: str) -> str:
    """Convert ``literal`` to `literal`."""
    return re.sub(r"``([^`]+)``", r"`\1`", text)


def _render_code(lines: list[str]) -> list[str]:
    body = inspect.cleandoc("\n".join(lines)).splitlines()
    return ["```python", *body, "```"]


def _render_text(lines: list[str]) -> list[str]:
    """Render a dedented section body, turning 'term: text' lines into bullets."""
    body = inspect.cleandoc("\n".join(lines)).splitlines()
    out: list[str] = []
    for line in body:
        if not line.strip():
            out.append("")
            continue
        if line.startswith((" ", "\t")) and out and out[-1].startswith("- "):
            out[-1] += " " + _rst_literals(line.strip())
            continue
        match = _TERM_PATTERN.match(line)
        if match:
            term, text = match.groups()
            out.append(f"- `{term}`: {_rst_literals(text)}".rstrip())
        else:
            out.append(_rst_literals(line.strip()))
    return out


def render_markdown(docstring: str) -> str:
    """Render a Google-style module docstring to Markdown."""
    out: list[str] = []
    section: str | None = None
    section_lines: list[str] = []

    def finish_section() -> None:
        if section is None:
            return
        out.append(f"## {section}")
        out.append("")
        if section in CODE_SECTIONS:
            out.extend(_render_code(section_lines))
        else:
            out.extend(_render_text(section_lines))
        out.append("")

    for line in docstring.splitlines():
        header = _SECTION_PATTERN.match(line)
        if header:
            finish_section()
            section = header.group(1)
            section_lines = []
        elif section is None:
            out.append(_rst_literals(line))
        else:
            section_lines.append(line)

    finish_section()

    # Collapse runs of blank lines and trailing whitespace
    text = "\n".join(out)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip() + "\n"


def find_docs_block(content: str) -> tuple[str, int, int] | None:
    """Find the text between the docs markers.

    Returns (block_text, start_pos, end_pos) or None.
    """
    start = content.find(START_MARKER)
    end = content.find(END_MARKER)
    if start == -1 or end == -1 or end < start:
        return None
    start += len(START_MARKER)
    return content[start:end], start, end


def validate_links(content: str, base: Path) -> list[str]:
    """Check all relative markdown links point to existing files."""
    issues = []
    for i, line in enumerate(content.splitlines(), 1):
        for match in re.finditer(r"\[([^\]]+)\]\(([^)]+)\)", line):
            text, path = match.group(1), match.group(2)
            if path.startswith(("http://", "https://", "#", "mailto:")):
                continue
            # Strip anchor fragments (e.g., "file.md#section" -> "file.md")
            file_path = path.split("#")[0]
            if not file_path:
                continue
            target = base / file_path
            if not target.exists():
                issues.append(f"  Line {i}: [{text}]({path}) -> file not found")
    return issues


def sync(readme: Path, package_init: Path, fix: bool) -> int:
    """Check (and with fix, update) readme. Returns a process exit code."""
    if not readme.exists():
        print(f"No README.md found at {readme}")
        return 1

    content = readme.read_text()
    result = find_docs_block(content)
    if result is None:
        print(f"No docs block found in {readme.name}. (Expected {START_MARKER} ... {END_MARKER})")
        return 1

    current, start_pos, end_pos = result
    expected = "\n" + render_markdown(read_docstring(package_init))

    issues: list[str] = []
    drifted = current != expected
    if drifted:
        issues.append(f"{readme.name} docs block is out of date with {package_init.name}")

    link_issues = validate_links(content, readme.parent)
    if link_issues:
        issues.append("Broken markdown links:")
        issues.extend(link_issues)

    if not issues:
        print(f"{readme.name} is in sync with the package docstring.")
        return 0

    for issue in issues:
        print(issue)

    if fix and drifted:
        readme.write_text(content[:start_pos] + expected + content[end_pos:])
        print(f"\nUpdated {readme.name} docs block.")
        if link_issues:
            print("Broken links require manual fixes.")
            return 1
        return 0

    if not fix:
        print("\nRun with --fix to update the docs block automatically.")

    return 1


def main() -> int:
    return sync(README, PACKAGE_INIT, fix="--fix" in sys.argv)


if __name__ == "__main__":
    sys.exit(main())
