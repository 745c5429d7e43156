"""System prompt for the motor sub-agent, rendered from prompts/motor_system.jinja2."""

from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from jinja2 import Environment, FileSystemLoader, select_autoescape

from motor_cortex.models import RecoveryContext, Run
from motor_cortex.tools.args import SYNTHETIC_TOOL_DESCRIPTIONS
from motor_cortex.tools.executor import TOOL_DESCRIPTIONS

if TYPE_CHECKING:
    from motor_cortex.skills import LoadedSkill

_PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"
_TEMPLATE = "motor_system.jinja2"
DEFAULT_SYNTHETIC_TOOLS = ("ask_user", "request_approval")

_env = Environment(
    loader=FileSystemLoader(_PROMPTS_DIR),
    autoescape=select_autoescape(enabled_extensions=()),
    keep_trailing_newline=False,
)


def build_system_prompt(
    run: Run,
    max_iterations: int,
    skill: "LoadedSkill | None" = None,
    recovery: RecoveryContext | None = None,
    synthetic_tools: Iterable[str] = DEFAULT_SYNTHETIC_TOOLS,
) -> str:
    descriptions = {**TOOL_DESCRIPTIONS, **SYNTHETIC_TOOL_DESCRIPTIONS}
    tools = [(name, descriptions.get(name, "")) for name in (*run.tools, *synthetic_tools)]
    skill_ctx: dict[str, Any] | None = None
    if skill is not None:
        skill_ctx = {
            "name": skill.name,
            "description": skill.description,
            "required_credentials": list(skill.policy.required_credentials),
        }
    template = _env.get_template(_TEMPLATE)
    return template.render(
        task=run.task,
        tools=tools,
        domains=run.domains,
        max_iterations=max_iterations,
        skill_authoring="write" in run.tools,
        skill=skill_ctx,
        recovery=recovery,
    ).strip()


def build_initial_messages(
    run: Run,
    max_iterations: int,
    skill: "LoadedSkill | None" = None,
    recovery: RecoveryContext | None = None,
    synthetic_tools: Iterable[str] = DEFAULT_SYNTHETIC_TOOLS,
) -> list[dict[str, Any]]:
    """Transcript a new attempt starts from: the system prompt and the task."""
    return [
        {
            "role": "system",
            "content": build_system_prompt(run, max_iterations, skill, recovery, synthetic_tools),
        },
        {"role": "user", "content": run.task},
    ]
