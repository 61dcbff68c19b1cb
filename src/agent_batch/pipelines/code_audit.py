"""Code audit pipeline: one worker-tool review per sizeable source directory."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from agent_batch.engine.models import ProcessResult, TaskItem
from agent_batch.engine.output_parsing import contains_json_object, extract_json_object
from agent_batch.engine.storage import utc_now_iso

logger = logging.getLogger(__name__)

PIPELINE_NAME = "code-audit"
AUDIT_FILE_NAME = "AUDIT.md"

IGNORE_DIRS = frozenset(
    {
        "node_modules",
        ".git",
        "dist",
        "build",
        ".next",
        "__pycache__",
        "venv",
        ".venv",
        "target",
        "vendor",
        ".cache",
        "coverage",
        ".agent-batch",
    },
)
CODE_EXTENSIONS = frozenset(
    {".js", ".ts", ".jsx", ".tsx", ".mjs", ".cjs", ".py", ".go", ".rs", ".java", ".rb", ".php"},
)
TEST_FILE_MARKERS = (".test.", ".spec.", "test_")

_AUDIT_INSTRUCTIONS = """\
You are a code security auditor. Review the source directory below and check for:
1. Security vulnerabilities (injection, XSS, secret leakage, ...)
2. Code quality problems (error handling, resource leaks, ...)
3. Violations of established best practices

Directory: {item_id}
{code}
Reply with JSON:
{{
  "severity": "low|medium|high|critical",
  "issues": [{{"type": "...", "description": "...", "file": "...", "line": "..."}}],
  "summary": "short summary"
}}
"""


@dataclass(slots=True)
class DirStats:
    """Non-recursive code size of one directory."""

    file_count: int = 0
    line_count: int = 0


class CodeAuditPipeline:
    """Discover large code directories, ask the worker tool to audit them, write AUDIT.md."""

    def __init__(
        self,
        *,
        max_depth: int = 3,
        min_files: int = 5,
        min_lines: int = 200,
        prompt_max_files: int = 8,
        prompt_max_lines: int = 100,
    ) -> None:
        self.max_depth = max_depth
        self.min_files = min_files
        self.min_lines = min_lines
        self.prompt_max_files = prompt_max_files
        self.prompt_max_lines = prompt_max_lines

    def discover(self, root_dir: Path) -> list[TaskItem]:
        items: list[TaskItem] = []
        root = root_dir.resolve()
        for directory in _find_code_dirs(root, max_depth=self.max_depth):
            stats = dir_stats(directory)
            if stats.file_count < self.min_files and stats.line_count < self.min_lines:
                continue
            relative = directory.relative_to(root).as_posix()
            items.append(
                TaskItem(
                    id=relative,
                    path=str(directory),
                    payload={"fileCount": stats.file_count, "lineCount": stats.line_count},
                ),
            )
        return items

    def build_input(self, item: TaskItem) -> str:
        code = read_code_files(
            Path(item.path),
            max_files=self.prompt_max_files,
            max_lines=self.prompt_max_lines,
        )
        return _AUDIT_INSTRUCTIONS.format(item_id=item.id, code=code)

    def interpret_result(self, item: TaskItem, result: ProcessResult) -> dict[str, Any]:
        if not result.success:
            return {"status": "llm_error", "reason": result.error, "sessionId": result.session_id}

        audit = extract_json_object(result.output, required_key="severity")
        if audit is None:
            if contains_json_object(result.output, required_key="severity"):
                return {"status": "parse_error", "sessionId": result.session_id}
            return {"status": "unclear", "sessionId": result.session_id}

        issues = audit.get("issues")
        issue_list: list[dict[str, Any]] = []
        if isinstance(issues, list):
            issue_list = [issue for issue in issues if isinstance(issue, dict)]
        severity = str(audit.get("severity", "unknown")).lower()
        audit_path = Path(item.path) / AUDIT_FILE_NAME
        audit_path.write_text(
            render_audit_markdown(
                item_id=item.id,
                severity=severity,
                summary=str(audit.get("summary", "")),
                issues=issue_list,
            ),
            "utf-8",
        )
        logger.debug("Wrote %s", audit_path)
        return {
            "status": "critical" if severity == "critical" else "audited",
            "severity": severity,
            "issueCount": len(issue_list),
        }


def render_audit_markdown(
    *,
    item_id: str,
    severity: str,
    summary: str,
    issues: list[dict[str, Any]],
) -> str:
    issue_lines = [
        f"- **{issue.get('type', 'issue')}** "
        f"({issue.get('file', '?')}:{issue.get('line') or '?'}): {issue.get('description', '')}"
        for issue in issues
    ]
    return (
        f"# Code Audit - {item_id}\n"
        f"\n"
        f"Generated: {utc_now_iso()}\n"
        f"\n"
        f"## Severity: {severity}\n"
        f"\n"
        f"## Summary\n"
        f"{summary}\n"
        f"\n"
        f"## Issues\n"
        f"{chr(10).join(issue_lines) if issue_lines else 'None found'}\n"
    )


def is_code_file(path: Path) -> bool:
    return path.suffix.lower() in CODE_EXTENSIONS


def is_test_file(name: str) -> bool:
    return any(marker in name for marker in TEST_FILE_MARKERS)


def dir_stats(directory: Path) -> DirStats:
    stats = DirStats()
    for entry in _sorted_entries(directory):
        if not entry.is_file() or not is_code_file(entry) or is_test_file(entry.name):
            continue
        stats.file_count += 1
        try:
            stats.line_count += len(entry.read_text("utf-8", errors="replace").split("\n"))
        except OSError:
            logger.debug("Skipping unreadable file %s", entry)
    return stats


def read_code_files(directory: Path, *, max_files: int, max_lines: int) -> str:
    chunks: list[str] = []
    for entry in _sorted_entries(directory):
        if len(chunks) >= max_files:
            break
        if not entry.is_file() or not is_code_file(entry):
            continue
        try:
            lines = entry.read_text("utf-8", errors="replace").split("\n")[:max_lines]
        except OSError:
            continue
        chunks.append(f"\n--- {entry.name} ---\n" + "\n".join(lines) + "\n")
    return "".join(chunks)


def _find_code_dirs(directory: Path, *, max_depth: int, depth: int = 0) -> list[Path]:
    if depth > max_depth:
        return []
    entries = _sorted_entries(directory)
    found: list[Path] = []
    if any(entry.is_file() and is_code_file(entry) for entry in entries):
        found.append(directory)
    for entry in entries:
        if entry.is_dir() and entry.name not in IGNORE_DIRS:
            found.extend(_find_code_dirs(entry, max_depth=max_depth, depth=depth + 1))
    return found


def _sorted_entries(directory: Path) -> list[Path]:
    try:
        return sorted(directory.iterdir(), key=lambda entry: entry.name)
    except OSError:
        return []
