"""Agent Skills: SKILL.md loading, workspace preparation, and extraction after a run.

A skill directory holds SKILL.md (YAML frontmatter + instructions), optional
reference files, and a host-side policy.json that is never copied into a
workspace. On success the workspace is diffed against the baseline written at
preparation time; changed or new skills are installed with status
pending_review so the user reviews them before first use.
"""

import hashlib
import json
import logging
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from motor_cortex.models import InstalledSkills

logger = logging.getLogger(__name__)

SKILL_FILE = "SKILL.md"
POLICY_FILE = "policy.json"
BASELINE_FILE = ".motor-baseline.json"
SKILL_NAME_RE = re.compile(r"^[a-z][a-z0-9]*(-[a-z0-9]+)*$")
MAX_NAME_LENGTH = 64
MAX_DESCRIPTION_LENGTH = 1024

SkillStatus = Literal["pending_review", "reviewed", "needs_reapproval", "approved"]


class SkillError(Exception):
    """Invalid, missing or unsafe skill."""


class SkillPolicy(BaseModel):
    """policy.json sidecar; controls what a skill may use at runtime."""

    schema_version: int = 2
    status: SkillStatus = "pending_review"
    tools: list[str] | None = None
    domains: list[str] = Field(default_factory=list)
    required_credentials: list[str] = Field(default_factory=list)
    extracted_from: dict[str, Any] | None = None


@dataclass
class LoadedSkill:
    name: str
    description: str
    body: str
    path: Path
    policy: SkillPolicy


def parse_skill_file(content: str) -> tuple[dict[str, Any], str]:
    """Split SKILL.md into (frontmatter, body). Raises SkillError."""
    text = content.lstrip()
    if not text.startswith("---"):
        raise SkillError("SKILL.md must start with --- (YAML frontmatter delimiter)")
    end = text.find("\n---", 3)
    if end == -1:
        raise SkillError("Missing closing --- delimiter for YAML frontmatter")
    try:
        frontmatter = yaml.safe_load(text[3:end]) or {}
    except yaml.YAMLError as e:
        raise SkillError(f"Invalid YAML frontmatter: {e}") from None
    if not isinstance(frontmatter, dict):
        raise SkillError("Frontmatter must be a mapping")
    body = text[end + 4 :].strip()
    return frontmatter, body


def validate_skill_name(name: Any) -> list[str]:
    if not isinstance(name, str) or not name:
        return ['Missing or invalid "name" (must be a string)']
    errors = []
    if len(name) > MAX_NAME_LENGTH:
        errors.append(f'"name" exceeds {MAX_NAME_LENGTH} characters')
    if not SKILL_NAME_RE.match(name):
        errors.append(
            'Invalid "name": lowercase letters, digits and single hyphens, starting with a letter'
        )
    return errors


def validate_frontmatter(frontmatter: dict[str, Any]) -> list[str]:
    """Return validation errors (empty list means valid)."""
    errors = validate_skill_name(frontmatter.get("name"))
    description = frontmatter.get("description")
    if not isinstance(description, str) or not description.strip():
        errors.append('Missing or invalid "description" (must be a non-empty string)')
    elif len(description) > MAX_DESCRIPTION_LENGTH:
        errors.append(f'"description" exceeds {MAX_DESCRIPTION_LENGTH} characters')
    return errors


def load_policy(skill_dir: Path) -> SkillPolicy | None:
    path = skill_dir / POLICY_FILE
    if not path.is_file():
        return None
    try:
        return SkillPolicy.model_validate_json(path.read_text(encoding="utf-8"))
    except (ValidationError, OSError) as e:
        logger.warning("skills: unreadable policy at %s: %s", path, e)
        return None


def save_policy(skill_dir: Path, policy: SkillPolicy) -> None:
    """Write policy.json atomically (temp file, then rename)."""
    tmp = skill_dir / f".{POLICY_FILE}.tmp"
    tmp.write_text(policy.model_dump_json(indent=2), encoding="utf-8")
    os.replace(tmp, skill_dir / POLICY_FILE)


def load_skill(name: str, skills_dir: Path) -> LoadedSkill:
    """Load <skills_dir>/<name>/SKILL.md plus its policy. Raises SkillError."""
    name_errors = validate_skill_name(name)
    if name_errors:
        raise SkillError(f"Invalid skill name {name!r}: {'; '.join(name_errors)}")
    skill_dir = skills_dir / name
    skill_md = skill_dir / SKILL_FILE
    if not skill_md.is_file():
        raise SkillError(f'Skill "{name}" not found in {skills_dir}')
    frontmatter, body = parse_skill_file(skill_md.read_text(encoding="utf-8"))
    errors = validate_frontmatter(frontmatter)
    if errors:
        raise SkillError(f"Validation errors in {name}/{SKILL_FILE}: {'; '.join(errors)}")
    if frontmatter["name"] != name:
        raise SkillError(f'Frontmatter name "{frontmatter["name"]}" does not match directory "{name}"')
    return LoadedSkill(
        name=name,
        description=frontmatter["description"].strip(),
        body=body,
        path=skill_dir,
        policy=load_policy(skill_dir) or SkillPolicy(),
    )


def discover_skills(skills_dir: Path) -> list[str]:
    if not skills_dir.is_dir():
        return []
    return sorted(p.name for p in skills_dir.iterdir() if (p / SKILL_FILE).is_file())


def _skip(name: str) -> bool:
    return name.startswith(".") or name == POLICY_FILE


def scan_skill_files(root: Path) -> dict[str, str]:
    """Map relative path -> sha256 for regular files, skipping hidden files, policy.json and symlinks."""
    result: dict[str, str] = {}
    if not root.is_dir():
        return result
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        dirnames[:] = sorted(d for d in dirnames if not _skip(d) and not (base / d).is_symlink())
        for filename in sorted(filenames):
            path = base / filename
            if _skip(filename) or path.is_symlink() or not path.is_file():
                continue
            rel = path.relative_to(root).as_posix()
            result[rel] = hashlib.sha256(path.read_bytes()).hexdigest()
    return result


def generate_baseline(root: Path) -> dict[str, Any]:
    return {"files": scan_skill_files(root)}


def write_baseline(workspace: Path) -> dict[str, Any]:
    baseline = generate_baseline(workspace)
    (workspace / BASELINE_FILE).write_text(json.dumps(baseline), encoding="utf-8")
    return baseline


def _ignore_for_copy(src: str, names: list[str]) -> set[str]:
    return {n for n in names if _skip(n) or os.path.islink(os.path.join(src, n))}


def prepare_skill_workspace(skill: LoadedSkill, workspace: Path) -> None:
    """Copy skill files into the workspace root and record the baseline."""
    workspace.mkdir(parents=True, exist_ok=True)
    shutil.copytree(skill.path, workspace, ignore=_ignore_for_copy, dirs_exist_ok=True)
    baseline = write_baseline(workspace)
    logger.debug(
        "skills: prepared workspace %s from %s (%d files)",
        workspace,
        skill.name,
        len(baseline["files"]),
    )


def _reject_symlinks(root: Path) -> None:
    for dirpath, dirnames, filenames in os.walk(root):
        for name in (*dirnames, *filenames):
            if os.path.islink(os.path.join(dirpath, name)):
                raise SkillError(f"Symlink detected: {Path(dirpath, name).relative_to(root)}")


def _unchanged_since_baseline(workspace: Path) -> bool:
    path = workspace / BASELINE_FILE
    if not path.is_file():
        return False
    try:
        baseline = json.loads(path.read_text(encoding="utf-8"))
    except (ValueError, OSError):
        return False
    return baseline.get("files") == scan_skill_files(workspace)


def extract_skills(
    workspace: Path,
    skills_dir: Path,
    run_id: str,
    pending_credentials: Iterable[str] = (),
) -> InstalledSkills:
    """Install a valid workspace SKILL.md as <skills_dir>/<name>/.

    Returns the created/updated names. Invalid skills are logged and skipped;
    a symlink anywhere in the workspace raises SkillError.
    """
    result = InstalledSkills()
    skill_md = workspace / SKILL_FILE
    if not skill_md.is_file():
        return result
    try:
        frontmatter, _ = parse_skill_file(skill_md.read_text(encoding="utf-8"))
    except SkillError as e:
        logger.warning("skills: SKILL.md parse error in run %s: %s", run_id, e)
        return result
    errors = validate_frontmatter(frontmatter)
    if errors:
        logger.warning("skills: frontmatter invalid in run %s: %s", run_id, "; ".join(errors))
        return result

    name = frontmatter["name"]
    target = skills_dir / name
    _reject_symlinks(workspace)

    existing = load_policy(target)
    is_update = existing is not None or (target / SKILL_FILE).is_file()
    if is_update and _unchanged_since_baseline(workspace):
        logger.debug("skills: %s unchanged since baseline, skipping", name)
        return result

    target.mkdir(parents=True, exist_ok=True)
    shutil.copytree(workspace, target, ignore=_ignore_for_copy, dirs_exist_ok=True)

    base = existing or SkillPolicy()
    required = list(dict.fromkeys([*base.required_credentials, *pending_credentials]))
    policy = SkillPolicy(
        status="pending_review",
        tools=base.tools,
        domains=base.domains,
        required_credentials=required,
        extracted_from={"run_id": run_id, "timestamp": datetime.now(timezone.utc).isoformat()},
    )
    save_policy(target, policy)

    if is_update:
        result.updated.append(name)
    else:
        result.created.append(name)
    logger.info("skills: %s %s from run %s", "updated" if is_update else "created", name, run_id)
    return result
