# -*- coding: utf-8 -*-
"""Location: ./mcpguard/utils/typescript_api.py
Copyright 2026
SPDX-License-Identifier: Apache-2.0

Render cached tool schemas as the API visible to sandboxed scripts.

Agents read this declaration to learn which ``mcp.<tool>(args)`` calls
exist and what arguments they take.

Examples:
    >>> from mcpguard.schemas import ToolDescriptor
    >>> tool = ToolDescriptor(name="get-weather", description="Current weather",
    ...     input_schema={"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]})
    >>> print(generate_typescript_api([tool]))
    interface GetWeatherInput {
      city: string;
    }
    <BLANKLINE>
    declare const mcp: {
      /** Current weather */
      "get-weather"(input: GetWeatherInput): Promise<any>;
    };
"""

# Standard
import json
import re
from typing import Any, Dict, Iterable, List

# First-Party
from mcpguard.schemas import ToolDescriptor

_IDENTIFIER_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$]*$")


def interface_name(tool_name: str) -> str:
    """PascalCase interface name for a tool's input.

    Args:
        tool_name: Tool name as listed by the server.

    Returns:
        Interface identifier.

    Examples:
        >>> interface_name("list_files")
        'ListFilesInput'
        >>> interface_name("2fa-check")
        'T2faCheckInput'
    """
    parts = [p for p in re.split(r"[^A-Za-z0-9]+", tool_name) if p]
    name = "".join(p[:1].upper() + p[1:] for p in parts) or "Tool"
    if name[0].isdigit():
        name = f"T{name}"
    return f"{name}Input"


def schema_to_typescript_type(schema: Dict[str, Any], indent: str = "") -> str:
    """Map a JSON schema to a TypeScript type expression.

    Args:
        schema: JSON schema fragment.
        indent: Indentation of the enclosing declaration.

    Returns:
        TypeScript type.

    Examples:
        >>> schema_to_typescript_type({"type": "array", "items": {"type": "integer"}})
        'number[]'
        >>> schema_to_typescript_type({"enum": ["a", "b"]})
        '"a" | "b"'
        >>> schema_to_typescript_type({"type": "object"})
        'Record<string, any>'
    """
    schema_type = schema.get("type")
    if schema.get("enum"):
        return " | ".join(json.dumps(v) for v in schema["enum"])
    if isinstance(schema_type, list):
        return " | ".join(schema_to_typescript_type({**schema, "type": t}, indent) for t in schema_type) or "any"
    if schema_type == "string":
        return "string"
    if schema_type in ("integer", "number"):
        return "number"
    if schema_type == "boolean":
        return "boolean"
    if schema_type == "null":
        return "null"
    if schema_type == "array":
        item = schema_to_typescript_type(schema.get("items") or {}, indent)
        return f"({item})[]" if "|" in item else f"{item}[]"
    if schema_type == "object":
        props = schema.get("properties") or {}
        if not props:
            return "Record<string, any>"
        return "{\n" + "\n".join(_property_lines(props, schema.get("required") or [], indent + "  ")) + f"\n{indent}}}"
    return "any"


def _property_lines(props: Dict[str, Any], required: Iterable[str], indent: str) -> List[str]:
    required_set = set(required)
    lines = []
    for key, prop in props.items():
        prop = prop or {}
        name = key if _IDENTIFIER_RE.match(key) else json.dumps(key)
        optional = "" if key in required_set else "?"
        description = (prop.get("description") or "").strip().replace("*/", "* /")
        if description:
            lines.append(f"{indent}/** {description} */")
        lines.append(f"{indent}{name}{optional}: {schema_to_typescript_type(prop, indent)};")
    return lines


def generate_typescript_api(tools: Iterable[ToolDescriptor]) -> str:
    """Render input interfaces plus the ``mcp`` object declaration.

    Args:
        tools: Tools of one server.

    Returns:
        TypeScript declaration text.
    """
    interfaces: List[str] = []
    members: List[str] = []
    for tool in tools:
        iface = interface_name(tool.name)
        props = tool.input_schema.get("properties") or {}
        body = _property_lines(props, tool.input_schema.get("required") or [], "  ")
        interfaces.append(f"interface {iface} {{\n" + "\n".join(body) + ("\n" if body else "") + "}")
        description = (tool.description or "").strip().replace("*/", "* /")
        if description:
            members.append(f"  /** {description} */")
        key = tool.name if _IDENTIFIER_RE.match(tool.name) else json.dumps(tool.name)
        members.append(f"  {key}(input: {iface}): Promise<any>;")
    declaration = "declare const mcp: {\n" + "\n".join(members) + ("\n" if members else "") + "};"
    return "\n\n".join(interfaces + [declaration])


def generate_python_api(tools: Iterable[ToolDescriptor]) -> str:
    """Render a Python stub describing ``mcp.<tool>(args)`` calls.

    Args:
        tools: Tools of one server.

    Returns:
        Python stub text.
    """
    lines = ["class mcp:"]
    for tool in tools:
        attr = re.sub(r"[^A-Za-z0-9_]", "_", tool.name)
        if attr[:1].isdigit():
            attr = f"_{attr}"
        required = set(tool.input_schema.get("required") or [])
        props = tool.input_schema.get("properties") or {}
        params = ", ".join(f"{k}{'' if k in required else '?'}" for k in props)
        if attr != tool.name:
            lines.append(f"    # not an identifier: await call_tool({json.dumps(tool.name)}, args)")
        lines.append(f"    async def {attr}(args: dict) -> Any:  # args: {{{params}}}")
        if tool.description:
            lines.append(f"        \"\"\"{tool.description.strip()}\"\"\"")
        else:
            lines.append("        ...")
    if len(lines) == 1:
        lines.append("    pass")
    return "\n".join(lines)
