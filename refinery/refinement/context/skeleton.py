"""
Signatures-only projections of source files.

Keeps imports, type/class headers and function signatures and drops bodies,
which typically cuts a file to a fifth of its tokens while preserving the
architecture the Analyst needs to see.
"""

from __future__ import annotations

import ast
import logging
import re

logger = logging.getLogger(__name__)

PYTHON_EXTENSIONS = {".py"}
SCRIPT_EXTENSIONS = {".ts", ".tsx", ".js", ".jsx"}
SUPPORTED_EXTENSIONS = PYTHON_EXTENSIONS | SCRIPT_EXTENSIONS

_TS_TYPE_RE = re.compile(r"^(export\s+)?(interface|type)\s+(\w+)")
_TS_CLASS_RE = re.compile(
    r"^(export\s+)?(?:default\s+)?(abstract\s+)?class\s+(\w+)(\s+extends\s+[\w.]+)?(\s+implements\s+[\w,\s.]+?)?\s*\{?$"
)
_TS_METHOD_RE = re.compile(
    r"^((?:(?:public|private|protected|static|async|readonly)\s+)*)(\w+)\s*\(([^)]*)\)\s*(?::\s*([^{]+))?\{?"
)
_TS_PROPERTY_RE = re.compile(r"^((?:(?:public|private|protected|static|readonly)\s+)*)(\w+)\??\s*:\s*([^=;]+)")
_TS_FUNCTION_RE = re.compile(r"^(export\s+)?(?:default\s+)?(async\s+)?function\s+(\w+)\s*\(([^)]*)\)\s*(?::\s*([^{]+))?")
_TS_CONST_RE = re.compile(r"^(export\s+)(const|let)\s+(\w+)\s*[=:]")
_CONTROL_KEYWORDS = ("if", "for", "while", "switch", "catch", "return")


def _suffix(name: str) -> str:
    dot = name.rfind(".")
    return name[dot:].lower() if dot >= 0 else ""


def _python_signature(node: ast.AST, indent: str) -> str | None:
    if isinstance(node, ast.ClassDef):
        bases = [ast.unparse(base) for base in node.bases]
        bases += [ast.unparse(keyword) for keyword in node.keywords]
        return f"{indent}class {node.name}" + (f"({', '.join(bases)})" if bases else "") + ":"
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
        returns = f" -> {ast.unparse(node.returns)}" if node.returns is not None else ""
        return f"{indent}{prefix} {node.name}({ast.unparse(node.args)}){returns}:"
    return None


def _walk_python(body: list[ast.stmt], indent: str, skeleton: list[str]) -> None:
    for node in body:
        if isinstance(node, (ast.Import, ast.ImportFrom)) and not indent:
            skeleton.append(ast.unparse(node))
            continue
        signature = _python_signature(node, indent)
        if signature is None:
            continue
        skeleton.append(signature)
        if isinstance(node, ast.ClassDef):
            _walk_python(node.body, indent + "    ", skeleton)


def skeletonize_python(content: str, file_name: str) -> str:
    skeleton = [f"# {file_name}"]
    try:
        tree = ast.parse(content)
    except (SyntaxError, ValueError):
        logger.debug("Could not parse %s; falling back to line scan", file_name)
        return _scan_python_lines(content, skeleton)
    _walk_python(tree.body, "", skeleton)
    return "\n".join(skeleton)


def _scan_python_lines(content: str, skeleton: list[str]) -> str:
    for line in content.splitlines():
        trimmed = line.strip()
        if trimmed.startswith(("import ", "from ")) and not line.startswith((" ", "\t")):
            skeleton.append(trimmed)
        elif trimmed.startswith("class "):
            skeleton.append(line.rstrip())
        elif trimmed.startswith(("def ", "async def ")):
            skeleton.append(line.rstrip())
    return "\n".join(skeleton)


def skeletonize_script(content: str, file_name: str) -> str:
    skeleton = [f"// {file_name}"]
    in_class = False
    depth = 0
    for line in content.splitlines():
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("//"):
            continue

        if trimmed.startswith("import ") or trimmed.startswith("export * from"):
            skeleton.append(trimmed)
            continue

        type_match = _TS_TYPE_RE.match(trimmed)
        if type_match and not in_class:
            skeleton.append(f"{type_match.group(1) or ''}{type_match.group(2)} {type_match.group(3)} {{ ... }}")
            continue

        class_match = _TS_CLASS_RE.match(trimmed)
        if class_match and not in_class:
            header = "".join(
                part or ""
                for part in (
                    class_match.group(1),
                    class_match.group(2),
                    "class ",
                    class_match.group(3),
                    class_match.group(4),
                    class_match.group(5),
                )
            )
            skeleton.append(f"{header.rstrip()} {{")
            opened = trimmed.count("{")
            depth = opened - trimmed.count("}")
            if opened and depth <= 0:
                skeleton.append("}")
            else:
                in_class = True
                # Brace on the following line: the body starts once it opens.
                depth = max(depth, 0)
            continue

        if in_class:
            if depth == 1:
                method = _TS_METHOD_RE.match(trimmed)
                if method and method.group(2) not in _CONTROL_KEYWORDS:
                    modifiers = method.group(1).strip()
                    returns = (method.group(4) or "").strip().rstrip("{").strip()
                    signature = f"{method.group(2)}({method.group(3)})" + (f": {returns}" if returns else "")
                    skeleton.append(f"  {modifiers + ' ' if modifiers else ''}{signature};")
                else:
                    prop = _TS_PROPERTY_RE.match(trimmed)
                    if prop and "(" not in trimmed:
                        modifiers = prop.group(1).strip()
                        skeleton.append(
                            f"  {modifiers + ' ' if modifiers else ''}{prop.group(2)}: {prop.group(3).strip()};"
                        )
            depth += trimmed.count("{") - trimmed.count("}")
            if depth <= 0 and "}" in trimmed:
                skeleton.append("}")
                in_class = False
            continue

        function_match = _TS_FUNCTION_RE.match(trimmed)
        if function_match:
            returns = (function_match.group(5) or "").strip()
            skeleton.append(
                f"{function_match.group(1) or ''}{function_match.group(2) or ''}function "
                f"{function_match.group(3)}({function_match.group(4)})" + (f": {returns}" if returns else "") + ";"
            )
            continue

        const_match = _TS_CONST_RE.match(trimmed)
        if const_match:
            skeleton.append(f"{const_match.group(1)}{const_match.group(2)} {const_match.group(3)}: /* ... */;")

    return "\n".join(skeleton)


def skeletonize(file_name: str, content: str) -> str | None:
    """Return a signatures-only view of ``content``, or None for unsupported types."""
    suffix = _suffix(file_name)
    if suffix in PYTHON_EXTENSIONS:
        return skeletonize_python(content, file_name)
    if suffix in SCRIPT_EXTENSIONS:
        return skeletonize_script(content, file_name)
    return None
