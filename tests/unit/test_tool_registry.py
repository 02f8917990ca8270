import pytest
from pydantic import BaseModel, Field, ValidationError

from gated_agent.agent.registry import ToolRegistry, ToolSpec


class EchoInput(BaseModel):
    value: int = Field(ge=1)


def test_tool_registry_validation() -> None:
    registry = ToolRegistry()

    def _handler(data: EchoInput) -> str:
        return str(data.value)

    registry.register(
        ToolSpec(
            name="echo",
            description="echo positive int",
            args_schema=EchoInput,
            handler=_handler,
        )
    )

    assert registry.execute("echo", {"value": 3}) == "3"

    with pytest.raises(ValidationError):
        registry.execute("echo", {"value": 0})


def test_duplicate_tool_registration_rejected() -> None:
    registry = ToolRegistry()

    def _handler(data: EchoInput) -> str:
        return str(data.value)

    spec = ToolSpec(
        name="echo",
        description="echo positive int",
        args_schema=EchoInput,
        handler=_handler,
    )

    registry.register(spec)
    with pytest.raises(ValueError):
        registry.register(spec)


def test_unknown_tool_raises_key_error() -> None:
    registry = ToolRegistry()

    assert not registry.has("missing")
    with pytest.raises(KeyError):
        registry.execute("missing", {})


def test_langchain_export_keeps_names_and_schemas() -> None:
    registry = ToolRegistry()
    registry.register(
        ToolSpec(
            name="echo",
            description="echo positive int",
            args_schema=EchoInput,
            handler=lambda data: str(data.value),
        )
    )

    (tool,) = registry.as_langchain_tools()

    assert tool.name == "echo"
    assert tool.args_schema is EchoInput
    assert tool.invoke({"value": 5}) == "5"
