"""megatool-calculator: basic arithmetic as an MCP tool."""

from __future__ import annotations

import logging
from typing import Annotated, Literal

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from pydantic import Field

from . import _base

log = logging.getLogger(__name__)

NAME = "calculator"

Operation = Literal["add", "subtract", "multiply", "divide"]


def compute(operation: Operation, x: float, y: float) -> float:
    if operation == "add":
        result = x + y
    elif operation == "subtract":
        result = x - y
    elif operation == "multiply":
        result = x * y
    elif operation == "divide":
        if y == 0:
            log.error("Calculation error", extra={"operation": operation, "x": x, "y": y, "error": "division by zero"})
            raise ToolError("division by zero is not allowed")
        result = x / y
    else:
        raise ToolError(f"unknown operation: {operation}")

    log.info("Calculation performed", extra={"operation": operation, "x": x, "y": y, "result": result})
    return result


def create_server() -> FastMCP:
    mcp = _base.create_server(
        "Calculator",
        instructions="Performs basic arithmetic. Use the calculate tool with an operation and two numbers.",
    )

    @mcp.tool()
    async def calculate(
        operation: Annotated[Operation, Field(description="The arithmetic operation to perform")],
        x: Annotated[float, Field(description="First number")],
        y: Annotated[float, Field(description="Second number")],
    ) -> str:
        """Perform basic arithmetic calculations."""
        return f"Result: {compute(operation, x, y):.2f}"

    return mcp


def main(argv: list[str] | None = None) -> int:
    return _base.serve(create_server(), NAME, "Calculator MCP server", argv)


if __name__ == "__main__":
    raise SystemExit(main())
