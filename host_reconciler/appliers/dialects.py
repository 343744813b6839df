"""
Readers and editors for service configuration file syntaxes.

Two dialects are supported:

``nginx``
    Block-structured, ``;``-terminated directives. A setting addresses a
    directive by the names of its enclosing blocks, e.g. ``events.worker_connections``
    or ``http.gzip``. When several blocks share a name the first one is used.

``directive``
    One ``key value`` pair per line with ``#`` comments, as used by redis.conf
    and sshd_config. The last occurrence of a key wins, except for keys
    declared as repeating (redis `save`), which take one line per value group.

Editing is textual: untouched lines, comments and formatting survive.
"""

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Type


class ConfigDialect(ABC):
    name: str = ""
    true_word: str = "yes"
    false_word: str = "no"

    @abstractmethod
    def get(self, content: str, key: str) -> Optional[str]:
        """Current value of key, or None when the directive is not set."""

    @abstractmethod
    def set(self, content: str, key: str, value: str) -> str:
        """Return content with key set to value."""

    def get_all(self, content: str, key: str) -> List[str]:
        raise ValueError(f"{self.name} configuration has no repeated directives")

    def set_all(self, content: str, key: str, values: List[str]) -> str:
        raise ValueError(f"{self.name} configuration has no repeated directives")

    def validate(self, content: str) -> None:
        """Raise ValueError when content cannot be parsed."""


# ----------------------------------------------------------------
# nginx
# ----------------------------------------------------------------
@dataclass
class _Statement:
    context: Tuple[str, ...]
    name: str
    args: List[str]
    start: int
    end: int


@dataclass
class _Block:
    path: Tuple[str, ...]
    start: int
    close: int = -1
    statements: List[_Statement] = field(default_factory=list)


def _scan_nginx(content: str) -> Tuple[List[_Statement], List[_Block]]:
    statements: List[_Statement] = []
    blocks: List[_Block] = []
    stack: List[_Block] = []
    tokens: List[Tuple[str, int]] = []
    i, n = 0, len(content)

    def context() -> Tuple[str, ...]:
        return stack[-1].path if stack else ()

    while i < n:
        ch = content[i]
        if ch.isspace():
            i += 1
        elif ch == "#":
            newline = content.find("\n", i)
            i = n if newline == -1 else newline + 1
        elif ch in "\"'":
            j = i + 1
            while j < n and content[j] != ch:
                j += 2 if content[j] == "\\" else 1
            if j >= n:
                raise ValueError(f"unterminated quoted string at offset {i}")
            tokens.append((content[i + 1:j], i))
            i = j + 1
        elif ch == ";":
            if not tokens:
                raise ValueError(f"unexpected ';' at offset {i}")
            stmt = _Statement(context(), tokens[0][0], [t for t, _ in tokens[1:]], tokens[0][1], i + 1)
            statements.append(stmt)
            if stack:
                stack[-1].statements.append(stmt)
            tokens = []
            i += 1
        elif ch == "{":
            if not tokens:
                raise ValueError(f"block without a name at offset {i}")
            block = _Block(context() + (tokens[0][0],), tokens[0][1])
            blocks.append(block)
            stack.append(block)
            tokens = []
            i += 1
        elif ch == "}":
            if tokens:
                raise ValueError(f"directive {tokens[0][0]!r} is missing its ';'")
            if not stack:
                raise ValueError(f"unexpected '}}' at offset {i}")
            stack.pop().close = i
            i += 1
        else:
            j = i
            while j < n and not content[j].isspace() and content[j] not in ";{}":
                j += 1
            tokens.append((content[i:j], i))
            i = j

    if tokens:
        raise ValueError(f"directive {tokens[0][0]!r} is missing its ';'")
    if stack:
        raise ValueError(f"block {'.'.join(stack[-1].path)!r} is not closed")
    return statements, blocks


def _line_start(content: str, offset: int) -> int:
    return content.rfind("\n", 0, offset) + 1


def _indent_of(content: str, offset: int) -> str:
    start = _line_start(content, offset)
    prefix = content[start:offset]
    return prefix if not prefix.strip() else re.match(r"\s*", prefix).group(0)


class NginxDialect(ConfigDialect):
    name = "nginx"
    true_word = "on"
    false_word = "off"

    @staticmethod
    def _split(key: str) -> Tuple[Tuple[str, ...], str]:
        parts = key.split(".")
        if any(not part for part in parts):
            raise ValueError(f"invalid nginx directive path: {key!r}")
        return tuple(parts[:-1]), parts[-1]

    def _find(self, statements: List[_Statement], key: str) -> Optional[_Statement]:
        path, name = self._split(key)
        for stmt in statements:
            if stmt.context == path and stmt.name == name:
                return stmt
        return None

    def get(self, content: str, key: str) -> Optional[str]:
        statements, _ = _scan_nginx(content)
        stmt = self._find(statements, key)
        return None if stmt is None else " ".join(stmt.args)

    def set(self, content: str, key: str, value: str) -> str:
        if any(ch in value for ch in ";{}"):
            raise ValueError(f"value for {key} may not contain ';', '{{' or '}}'")
        statements, blocks = _scan_nginx(content)
        path, name = self._split(key)
        line = f"{name} {value};"

        stmt = self._find(statements, key)
        if stmt is not None:
            return content[:stmt.start] + line + content[stmt.end:]

        if not path:
            top_level = [s for s in statements if not s.context]
            if not top_level:
                return f"{line}\n{content}"
            last = top_level[-1]
            newline = content.find("\n", last.end)
            insert_at = len(content) if newline == -1 else newline + 1
            prefix = "" if newline != -1 else "\n"
            return content[:insert_at] + f"{prefix}{_indent_of(content, last.start)}{line}\n" + content[insert_at:]

        block = next((b for b in blocks if b.path == path), None)
        if block is None:
            raise KeyError(f"no '{'.'.join(path)}' block in configuration")

        close_line = _line_start(content, block.close)
        if content[close_line:block.close].strip():
            # closing brace shares a line with other text
            return content[:block.close] + f" {line} " + content[block.close:]
        if block.statements:
            indent = _indent_of(content, block.statements[-1].start)
        else:
            indent = _indent_of(content, block.start) + "    "
        return content[:close_line] + f"{indent}{line}\n" + content[close_line:]

    def validate(self, content: str) -> None:
        _scan_nginx(content)


# ----------------------------------------------------------------
# key value lines (redis.conf, sshd_config)
# ----------------------------------------------------------------
class DirectiveDialect(ConfigDialect):
    name = "directive"

    @staticmethod
    def _parse(line: str) -> Optional[Tuple[str, str]]:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            return None
        parts = stripped.split(None, 1)
        return parts[0].lower(), parts[1].strip() if len(parts) > 1 else ""

    @staticmethod
    def _unquote(value: str) -> str:
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            return value[1:-1]
        return value

    def get_all(self, content: str, key: str) -> List[str]:
        """Every value of a key that may repeat, in file order."""
        found = []
        for line in content.splitlines():
            parsed = self._parse(line)
            if parsed and parsed[0] == key.lower():
                found.append(self._unquote(parsed[1]))
        return found

    def get(self, content: str, key: str) -> Optional[str]:
        found = self.get_all(content, key)
        return found[-1] if found else None

    def set(self, content: str, key: str, value: str) -> str:
        return self.set_all(content, key, [value])

    def set_all(self, content: str, key: str, values: List[str]) -> str:
        """
        Replace every occurrence of key with one line per value.

        The new lines take the place of the last existing occurrence, so a key
        that is set once keeps its position in the file.
        """
        if not values:
            raise ValueError(f"no value given for {key}")
        if any("\n" in value for value in values):
            raise ValueError(f"value for {key} may not span lines")
        lines = content.splitlines(keepends=True)
        matches = [i for i, line in enumerate(lines) if (self._parse(line) or ("",))[0] == key.lower()]
        if not matches:
            if lines and not lines[-1].endswith("\n"):
                lines[-1] += "\n"
            lines.extend(f"{key} {value}\n" for value in values)
            return "".join(lines)

        keep = matches[-1]
        indent = re.match(r"\s*", lines[keep]).group(0)
        lines[keep] = "".join(f"{indent}{key} {value}\n" for value in values)
        for i in reversed(matches[:-1]):
            del lines[i]
        return "".join(lines)


DIALECTS: Dict[str, Type[ConfigDialect]] = {
    NginxDialect.name: NginxDialect,
    DirectiveDialect.name: DirectiveDialect,
}


def get_dialect(name: str) -> ConfigDialect:
    try:
        return DIALECTS[name]()
    except KeyError:
        raise ValueError(f"unknown configuration dialect: {name!r}") from None
