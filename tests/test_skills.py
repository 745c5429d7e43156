"""Tests for skill loading, workspace preparation and extraction."""

import json
import os
from pathlib import Path

import pytest

from motor_cortex.skills import (
    BASELINE_FILE,
    POLICY_FILE,
    SkillError,
    SkillPolicy,
    discover_skills,
    extract_skills,
    load_skill,
    parse_skill_file,
    prepare_skill_workspace,
    save_policy,
    validate_frontmatter,
)

SKILL_MD = """---
name: weather-report
description: Fetch the forecast and write a short report.
---

# Weather report

1. Fetch the forecast.
"""


def _install(skills_dir: Path, name: str = "weather-report", policy: SkillPolicy | None = None) -> Path:
    skill_dir = skills_dir / name
    skill_dir.mkdir(parents=True)
    (skill_dir / "SKILL.md").write_text(SKILL_MD.replace("weather-report", name), encoding="utf-8")
    (skill_dir / "reference.md").write_text("API notes", encoding="utf-8")
    if policy is not None:
        save_policy(skill_dir, policy)
    return skill_dir


class TestParsing:
    def test_parse_frontmatter_and_body(self) -> None:
        frontmatter, body = parse_skill_file(SKILL_MD)
        assert frontmatter["name"] == "weather-report"
        assert body.startswith("# Weather report")

    @pytest.mark.parametrize(
        "content",
        ["no frontmatter", "---\nname: x\n", "---\n: [bad\n---\nbody", "---\n- a list\n---\nbody"],
    )
    def test_invalid_files(self, content: str) -> None:
        with pytest.raises(SkillError):
            parse_skill_file(content)

    @pytest.mark.parametrize(
        "name", ["Weather", "weather--report", "-weather", "9lives", "a" * 65, "", None]
    )
    def test_invalid_names(self, name) -> None:
        assert validate_frontmatter({"name": name, "description": "d"})

    def test_description_required_and_bounded(self) -> None:
        assert validate_frontmatter({"name": "ok", "description": "  "})
        assert validate_frontmatter({"name": "ok", "description": "x" * 1025})
        assert validate_frontmatter({"name": "ok-2", "description": "fine"}) == []


class TestLoad:
    def test_load_with_policy(self, tmp_path: Path) -> None:
        policy = SkillPolicy(status="approved", domains=["api.weather.gov"], required_credentials=["weather_key"])
        _install(tmp_path, policy=policy)
        skill = load_skill("weather-report", tmp_path)
        assert skill.description == "Fetch the forecast and write a short report."
        assert skill.policy.domains == ["api.weather.gov"]
        assert skill.policy.required_credentials == ["weather_key"]

    def test_load_without_policy_defaults_to_pending(self, tmp_path: Path) -> None:
        _install(tmp_path)
        assert load_skill("weather-report", tmp_path).policy.status == "pending_review"

    def test_missing_skill(self, tmp_path: Path) -> None:
        with pytest.raises(SkillError, match="not found"):
            load_skill("nope", tmp_path)

    def test_name_mismatch(self, tmp_path: Path) -> None:
        skill_dir = tmp_path / "other"
        skill_dir.mkdir()
        (skill_dir / "SKILL.md").write_text(SKILL_MD, encoding="utf-8")
        with pytest.raises(SkillError, match="does not match"):
            load_skill("other", tmp_path)

    def test_traversal_name_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(SkillError):
            load_skill("../etc", tmp_path)

    def test_discover(self, tmp_path: Path) -> None:
        _install(tmp_path, "b-skill")
        _install(tmp_path, "a-skill")
        (tmp_path / "not-a-skill").mkdir()
        assert discover_skills(tmp_path) == ["a-skill", "b-skill"]


class TestWorkspace:
    def test_prepare_copies_without_policy(self, tmp_path: Path, workspace: Path) -> None:
        _install(tmp_path / "skills", policy=SkillPolicy())
        skill = load_skill("weather-report", tmp_path / "skills")
        prepare_skill_workspace(skill, workspace)
        assert (workspace / "SKILL.md").is_file()
        assert (workspace / "reference.md").is_file()
        assert not (workspace / POLICY_FILE).exists()
        baseline = json.loads((workspace / BASELINE_FILE).read_text(encoding="utf-8"))
        assert set(baseline["files"]) == {"SKILL.md", "reference.md"}


class TestExtract:
    def test_new_skill_installed_pending_review(self, tmp_path: Path, workspace: Path) -> None:
        (workspace / "SKILL.md").write_text(SKILL_MD, encoding="utf-8")
        (workspace / "scripts").mkdir()
        (workspace / "scripts" / "run.sh").write_text("echo hi", encoding="utf-8")
        (workspace / ".motor-output").mkdir()
        (workspace / ".motor-output" / "bash-1.txt").write_text("spill", encoding="utf-8")
        skills_dir = tmp_path / "skills"

        result = extract_skills(workspace, skills_dir, "run-1", ["weather_key"])

        assert result.created == ["weather-report"]
        target = skills_dir / "weather-report"
        assert (target / "scripts" / "run.sh").is_file()
        assert not (target / ".motor-output").exists()
        policy = SkillPolicy.model_validate_json((target / POLICY_FILE).read_text(encoding="utf-8"))
        assert policy.status == "pending_review"
        assert policy.required_credentials == ["weather_key"]
        assert policy.extracted_from["run_id"] == "run-1"

    def test_no_skill_file_is_noop(self, tmp_path: Path, workspace: Path) -> None:
        result = extract_skills(workspace, tmp_path / "skills", "run-1")
        assert result.created == [] and result.updated == []

    def test_invalid_frontmatter_skipped(self, tmp_path: Path, workspace: Path) -> None:
        (workspace / "SKILL.md").write_text("---\nname: Bad Name\ndescription: x\n---\n", encoding="utf-8")
        result = extract_skills(workspace, tmp_path / "skills", "run-1")
        assert result.created == []
        assert not (tmp_path / "skills").exists()

    def test_symlink_rejects_extraction(self, tmp_path: Path, workspace: Path) -> None:
        (workspace / "SKILL.md").write_text(SKILL_MD, encoding="utf-8")
        os.symlink("/etc/passwd", workspace / "passwd")
        with pytest.raises(SkillError, match="Symlink"):
            extract_skills(workspace, tmp_path / "skills", "run-1")

    def test_unchanged_skill_skipped(self, tmp_path: Path, workspace: Path) -> None:
        skills_dir = tmp_path / "skills"
        _install(skills_dir, policy=SkillPolicy(status="approved"))
        prepare_skill_workspace(load_skill("weather-report", skills_dir), workspace)
        result = extract_skills(workspace, skills_dir, "run-2")
        assert result.created == [] and result.updated == []
        policy = SkillPolicy.model_validate_json(
            (skills_dir / "weather-report" / POLICY_FILE).read_text(encoding="utf-8")
        )
        assert policy.status == "approved"

    def test_changed_skill_updated_and_needs_review(self, tmp_path: Path, workspace: Path) -> None:
        skills_dir = tmp_path / "skills"
        _install(
            skills_dir,
            policy=SkillPolicy(status="approved", domains=["api.weather.gov"], required_credentials=["a"]),
        )
        prepare_skill_workspace(load_skill("weather-report", skills_dir), workspace)
        (workspace / "reference.md").write_text("API notes v2", encoding="utf-8")

        result = extract_skills(workspace, skills_dir, "run-3", ["b"])

        assert result.updated == ["weather-report"]
        target = skills_dir / "weather-report"
        assert (target / "reference.md").read_text(encoding="utf-8") == "API notes v2"
        policy = SkillPolicy.model_validate_json((target / POLICY_FILE).read_text(encoding="utf-8"))
        assert policy.status == "pending_review"
        assert policy.domains == ["api.weather.gov"]
        assert policy.required_credentials == ["a", "b"]
