"""Typed argument models, one per tool, validated before dispatch."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class _Args(BaseModel):
    # Models sometimes send extra keys; they are dropped rather than rejected.
    model_config = ConfigDict(extra="ignore")


class ReadArgs(_Args):
    path: str = Field(description="File path relative to the workspace.")
    offset: int = Field(default=1, ge=1, description="1-based line to start from.")
    limit: int = Field(default=2000, ge=1, le=2000, description="Maximum lines to return.")


class WriteArgs(_Args):
    path: str = Field(description="File path relative to the workspace.")
    content: str = Field(description="Full file content. Parent directories are created.")


class ListArgs(_Args):
    path: str = Field(default=".", description="Directory relative to the workspace.")
    recursive: bool = Field(default=False, description="Descend into subdirectories.")


class GlobArgs(_Args):
    pattern: str = Field(description='Glob pattern, e.g. "**/*.py".')
    path: str = Field(default=".", description="Directory to search from.")


class GrepArgs(_Args):
    pattern: str = Field(description="Regular expression to search for.")
    path: str = Field(default=".", description="File or directory to search.")
    glob: str | None = Field(default=None, description='Only search files matching this glob, e.g. "*.md".')
    ignore_case: bool = False


class PatchArgs(_Args):
    path: str = Field(description="File to edit.")
    old_text: str = Field(min_length=1, description="Exact text to replace; must occur exactly once.")
    new_text: str = Field(description="Replacement text.")

    @model_validator(mode="before")
    @classmethod
    def _accept_replacement_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and "new_text" not in data and "replacement" in data:
            data = dict(data)
            data["new_text"] = data.pop("replacement")
        return data


class BashArgs(_Args):
    command: str = Field(min_length=1, description="Command or pipeline (single | only).")
    description: str | None = Field(default=None, description="Short note on what the command does.")


class CodeArgs(_Args):
    code: str = Field(min_length=1, description="Python source. Print results to stdout.")


class FetchArgs(_Args):
    url: str = Field(description="http(s) URL.")
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: str | None = None


class SearchArgs(_Args):
    query: str = Field(min_length=1)
    limit: int = Field(default=5, ge=1, le=20)


class AskUserArgs(_Args):
    question: str = Field(min_length=1, description="Question for the user.")

    @model_validator(mode="before")
    @classmethod
    def _accept_message_alias(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("question") and data.get("message"):
            data = dict(data)
            data["question"] = data.pop("message")
        return data


class RequestApprovalArgs(_Args):
    action: str = Field(min_length=1, description="The sensitive action that needs sign-off.")


class SaveCredentialArgs(_Args):
    name: str = Field(pattern=r"^[A-Za-z0-9_]+$", description="Credential name (letters, digits, _).")
    value: str = Field(min_length=1, description="Secret value.")


TOOL_ARGS: dict[str, type[BaseModel]] = {
    "read": ReadArgs,
    "write": WriteArgs,
    "list": ListArgs,
    "glob": GlobArgs,
    "grep": GrepArgs,
    "patch": PatchArgs,
    "bash": BashArgs,
    "code": CodeArgs,
    "fetch": FetchArgs,
    "search": SearchArgs,
}

SYNTHETIC_TOOL_ARGS: dict[str, type[BaseModel]] = {
    "ask_user": AskUserArgs,
    "request_approval": RequestApprovalArgs,
    "save_credential": SaveCredentialArgs,
}

SYNTHETIC_TOOL_DESCRIPTIONS: dict[str, str] = {
    "ask_user": "Ask the user a question. Execution pauses until they answer.",
    "request_approval": "Request the user's approval before a sensitive action. Execution pauses.",
    "save_credential": "Save a credential (e.g. an API key obtained during signup) for this and future runs.",
}


def function_schema(name: str, description: str, args_model: type[BaseModel]) -> dict[str, Any]:
    """Chat-completions tool schema for an argument model."""
    parameters = args_model.model_json_schema()
    parameters.pop("title", None)
    for prop in parameters.get("properties", {}).values():
        prop.pop("title", None)
    return {
        "type": "function",
        "function": {"name": name, "description": description, "parameters": parameters},
    }


def synthetic_schemas(names: list[str]) -> list[dict[str, Any]]:
    return [
        function_schema(n, SYNTHETIC_TOOL_DESCRIPTIONS[n], SYNTHETIC_TOOL_ARGS[n])
        for n in names
    ]
