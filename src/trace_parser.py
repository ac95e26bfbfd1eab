"""
Trace Parser Module
===================
Parses raw strace output into a structured process tree.

This module handles the first stage of the pipeline:
- Reading raw trace files (``strace -f -Xraw -xx -s 65500 -v``)
- Merging ``<unfinished ...>`` / ``<... resumed>`` halves of a call
- Tokenizing syscall arguments (ints, flag unions, strings, arrays, structs)
- Grouping calls by process id and linking fork/clone children to parents
"""

import re
import ipaddress
import logging
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple, Union
from dataclasses import dataclass, field
from datetime import datetime

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------------
# Argument tokens
# ----------------------------------------------------------------------------


@dataclass
class IntExpr:
    """Integer expression: numbers and named constants joined by ``|``."""
    parts: Tuple[str, ...]

    @property
    def text(self) -> str:
        return "|".join(self.parts)


@dataclass
class StringToken:
    data: bytes
    truncated: bool = False


@dataclass
class ArrayToken:
    elems: List["Token"] = field(default_factory=list)


@dataclass
class StructToken:
    fields: List[Tuple[Optional[str], "Token"]] = field(default_factory=list)

    def get(self, name: str) -> Optional["Token"]:
        for field_name, value in self.fields:
            if field_name == name:
                return value
        return None


@dataclass
class CallToken:
    """Helper call printed by strace, e.g. ``htons(80)``."""
    func: str
    args: List["Token"] = field(default_factory=list)


Token = Union[IntExpr, StringToken, ArrayToken, StructToken, CallToken]


def parse_int(text: str) -> Optional[int]:
    """Parse a decimal, hex or octal literal; None for anything else."""
    text = text.strip()
    negative = text.startswith("-")
    body = text[1:] if negative else text
    try:
        if body.lower().startswith("0x"):
            value = int(body, 16)
        elif len(body) > 1 and body.startswith("0") and body.isdigit():
            value = int(body, 8)
        elif body.isdigit():
            value = int(body)
        else:
            return None
    except ValueError:
        return None
    return -value if negative else value


def _htons(value: int) -> int:
    return ((value & 0xff) << 8) | ((value >> 8) & 0xff)


def _htonl(value: int) -> int:
    return int.from_bytes((value & 0xffffffff).to_bytes(4, "big"), "little")


def _makedev(major: int, minor: int) -> int:
    return ((minor & 0xff) | ((major & 0xfff) << 8)
            | ((minor & ~0xff) << 12) | ((major & ~0xfff) << 32))


def eval_int(token: Optional["Token"], consts: Mapping[str, int]) -> Optional[int]:
    """
    Evaluate a token to an integer using named constants.

    Unknown names inside a flag union contribute nothing; a union made only
    of unknown names evaluates to None.
    """
    if isinstance(token, IntExpr):
        value = 0
        known = False
        for part in token.parts:
            if part == "NULL":
                part_value = 0
            else:
                part_value = parse_int(part)
                if part_value is None:
                    part_value = consts.get(part)
            if part_value is not None:
                value |= part_value
                known = True
        return value if known else None
    if isinstance(token, CallToken):
        args = [eval_int(arg, consts) for arg in token.args]
        if token.func == "htons" and args and args[0] is not None:
            return _htons(args[0])
        if token.func == "htonl" and args and args[0] is not None:
            return _htonl(args[0])
        if token.func == "makedev" and len(args) == 2 and None not in args:
            return _makedev(args[0], args[1])
        data = eval_bytes(token)
        if data is not None:
            return int.from_bytes(data[:8], "little")
        return None
    if isinstance(token, StructToken) and token.fields:
        return eval_int(token.fields[0][1], consts)
    if isinstance(token, ArrayToken) and token.elems:
        return eval_int(token.elems[0], consts)
    return None


def eval_bytes(token: Optional["Token"]) -> Optional[bytes]:
    """Raw bytes of a string or of an address helper such as ``inet_pton``."""
    if isinstance(token, StringToken):
        return token.data
    if isinstance(token, CallToken):
        text_args = [arg.data.decode("latin-1") for arg in token.args
                     if isinstance(arg, StringToken)]
        if not text_args:
            return None
        try:
            if token.func == "inet_addr":
                return ipaddress.IPv4Address(text_args[0]).packed
            if token.func == "inet_pton":
                return ipaddress.ip_address(text_args[0]).packed
        except ValueError:
            return None
    return None


# ----------------------------------------------------------------------------
# Trace records and tree
# ----------------------------------------------------------------------------


@dataclass
class TraceCall:
    """One syscall as recorded by strace."""
    pid: int
    name: str
    args: List[Token]
    ret: int
    errno: Optional[str] = None
    raw_line: str = ""

    @property
    def failed(self) -> bool:
        return self.ret < 0 and self.errno is not None

    def __repr__(self):
        return f"TraceCall(pid={self.pid}, {self.name}, ret={self.ret})"


@dataclass
class TraceNode:
    """Ordered calls of one process."""
    pid: int
    ppid: Optional[int] = None
    calls: List[TraceCall] = field(default_factory=list)


FORK_CALLS = ("clone", "clone3", "fork", "vfork")


@dataclass
class TraceTree:
    """Process hierarchy of one trace file."""
    filename: str
    root_pid: Optional[int] = None
    trace_map: Dict[int, TraceNode] = field(default_factory=dict)
    ptree: Dict[int, List[int]] = field(default_factory=dict)
    _parents: Dict[int, int] = field(default_factory=dict, repr=False)

    def add_call(self, call: TraceCall) -> None:
        if self.root_pid is None:
            self.root_pid = call.pid
        node = self.trace_map.get(call.pid)
        if node is None:
            node = TraceNode(pid=call.pid, ppid=self._parents.get(call.pid))
            self.trace_map[call.pid] = node
        node.calls.append(call)
        if call.name in FORK_CALLS and call.ret > 0:
            self.add_child(call.pid, call.ret)

    def add_child(self, pid: int, child: int) -> None:
        if child == pid:
            return
        children = self.ptree.setdefault(pid, [])
        if child not in children:
            children.append(child)
        self._parents[child] = pid
        if child in self.trace_map:
            self.trace_map[child].ppid = pid

    @property
    def num_calls(self) -> int:
        return sum(len(node.calls) for node in self.trace_map.values())


# ----------------------------------------------------------------------------
# Argument tokenizer
# ----------------------------------------------------------------------------

_ESCAPES = {"n": b"\n", "t": b"\t", "r": b"\r", "v": b"\v", "f": b"\f",
            "a": b"\a", "b": b"\b", "\\": b"\\", '"': b'"', "'": b"'"}
_ATOM = re.compile(r'-?[\w.&~:@$+-]+')
_COMMENT = re.compile(r'/\*.*?\*/')
_FIELD_NAME = re.compile(r'\s*([A-Za-z_]\w*)\s*=(?!=)')


class ArgParseError(ValueError):
    pass


class _ArgParser:
    """Recursive-descent parser for a strace argument list."""

    def __init__(self, text: str):
        self.text = text
        self.pos = 0

    def _skip_ws(self) -> None:
        while self.pos < len(self.text) and self.text[self.pos].isspace():
            self.pos += 1

    def _peek(self) -> str:
        self._skip_ws()
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def _expect(self, ch: str) -> None:
        if self._peek() != ch:
            raise ArgParseError(f"expected '{ch}' at {self.pos} in {self.text[:80]!r}")
        self.pos += 1

    def _at_ellipsis(self) -> bool:
        self._skip_ws()
        return self.text.startswith("...", self.pos)

    def parse_list(self, closing: str) -> List[Token]:
        items: List[Token] = []
        while self._peek() not in (closing, ""):
            if self._at_ellipsis():
                self.pos += 3
            else:
                # clone(child_stack=NULL, flags=...) style named arguments
                named = _FIELD_NAME.match(self.text, self.pos)
                if named:
                    self.pos = named.end()
                items.append(self.parse_value())
            if self._peek() == ",":
                self.pos += 1
        return items

    def parse_value(self) -> Token:
        ch = self._peek()
        if ch == '"':
            return self._parse_string()
        if ch == "[":
            self.pos += 1
            elems = self.parse_list("]")
            self._expect("]")
            return ArrayToken(elems)
        if ch == "{":
            return self._parse_struct()
        return self._parse_expr()

    def _parse_string(self) -> StringToken:
        self._expect('"')
        out = bytearray()
        text = self.text
        while self.pos < len(text) and text[self.pos] != '"':
            ch = text[self.pos]
            if ch != "\\":
                out += ch.encode("latin-1", errors="replace")
                self.pos += 1
                continue
            nxt = text[self.pos + 1] if self.pos + 1 < len(text) else ""
            if nxt == "x":
                out.append(int(text[self.pos + 2:self.pos + 4], 16))
                self.pos += 4
            elif nxt.isdigit():
                digits = re.match(r'[0-7]{1,3}', text[self.pos + 1:]).group(0)
                out.append(int(digits, 8) & 0xff)
                self.pos += 1 + len(digits)
            else:
                out += _ESCAPES.get(nxt, nxt.encode("latin-1", errors="replace"))
                self.pos += 2
        self._expect('"')
        truncated = self._at_ellipsis()
        if truncated:
            self.pos += 3
        return StringToken(bytes(out), truncated)

    def _parse_struct(self) -> StructToken:
        self._expect("{")
        fields: List[Tuple[Optional[str], Token]] = []
        while self._peek() not in ("}", ""):
            if self._at_ellipsis():
                self.pos += 3
            else:
                name = None
                match = _FIELD_NAME.match(self.text, self.pos)
                if match:
                    name = match.group(1)
                    self.pos = match.end()
                fields.append((name, self.parse_value()))
            if self._peek() == ",":
                self.pos += 1
        self._expect("}")
        return StructToken(fields)

    def _parse_atom(self) -> Token:
        self._skip_ws()
        match = _ATOM.match(self.text, self.pos)
        if not match:
            raise ArgParseError(f"unexpected input at {self.pos} in {self.text[:80]!r}")
        self.pos = match.end()
        atom = match.group(0)
        if self._peek() == "(":
            self.pos += 1
            args = self.parse_list(")")
            self._expect(")")
            return CallToken(atom, args)
        # -y annotations: 3</dev/null>
        if self._peek() == "<":
            end = self.text.find(">", self.pos)
            self.pos = end + 1 if end != -1 else len(self.text)
        return IntExpr((atom,))

    def _parse_expr(self) -> Token:
        token = self._parse_atom()
        if not isinstance(token, IntExpr):
            return token
        parts = list(token.parts)
        while self._peek() == "|":
            self.pos += 1
            nxt = self._parse_atom()
            if isinstance(nxt, IntExpr):
                parts.extend(nxt.parts)
        return IntExpr(tuple(parts))


def parse_args(text: str) -> List[Token]:
    """Tokenize the text between a syscall's parentheses."""
    parser = _ArgParser(_COMMENT.sub("", text))
    args = parser.parse_list("")
    return args


def _split_call(text: str) -> Optional[Tuple[str, str, str]]:
    """Split ``name(args) = ret...`` into its three parts."""
    match = re.match(r'\s*([A-Za-z_][\w$]*)\(', text)
    if not match:
        return None
    depth = 1
    in_string = False
    i = match.end()
    while i < len(text):
        ch = text[i]
        if in_string:
            if ch == "\\":
                i += 1
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
            if depth == 0:
                return match.group(1), text[match.end():i], text[i + 1:]
        i += 1
    return None


# ----------------------------------------------------------------------------
# Parser
# ----------------------------------------------------------------------------


class TraceParser:
    """Parses raw strace output into a TraceTree."""

    LINE_PREFIX = re.compile(
        r'^(?:\[pid\s+(?P<bpid>\d+)\]\s+|(?P<pid>\d+)\s+)?'   # Process id
        r'(?:\d{1,2}:\d{2}:\d{2}(?:\.\d+)?\s+|\d+\.\d+\s+)?'  # Optional timestamp
        r'(?P<rest>.*)$'
    )
    RESUMED = re.compile(r'^<\.\.\.\s+([\w$]+)\s+resumed>\s?(.*)$')
    UNFINISHED = re.compile(r'\s*<unfinished \.\.\.>\s*$')
    RETURN = re.compile(
        r'^\s*=\s*(?P<ret>-?(?:0x[0-9a-fA-F]+|\d+)|\?)'
        r'(?:<[^>]*>)?'
        r'(?:\s+(?P<errno>E[A-Z0-9]+)\s*(?:\(.*\))?)?'
    )

    def __init__(self, trace_file: Path):
        """
        Initialize trace parser.

        Args:
            trace_file: Path to the raw strace output file
        """
        self.trace_file = Path(trace_file)
        self.tree = TraceTree(filename=str(self.trace_file))
        self.parse_errors = 0
        self.total_lines = 0
        self.unfinished: Dict[int, str] = {}

        logger.debug(f"Initialized TraceParser for file: {self.trace_file.name}")

    def parse(self) -> Optional[TraceTree]:
        """
        Parse the entire trace file.

        Returns:
            TraceTree, or None when the file holds no syscalls
        """
        start_time = datetime.now()

        try:
            with open(self.trace_file, 'r', encoding='latin-1') as f:
                for line in f:
                    self.total_lines += 1
                    call = self._parse_line(line)
                    if call:
                        self.tree.add_call(call)
        except OSError as e:
            logger.error(f"Error reading trace file: {e}")
            raise

        duration = (datetime.now() - start_time).total_seconds()
        logger.debug(f"Parsed {self.tree.num_calls} calls from {self.total_lines} lines "
                     f"in {duration:.2f}s ({self.parse_errors} unparsed)")

        if self.unfinished:
            logger.debug(f"Dropping {len(self.unfinished)} calls that never resumed")
        if not self.tree.trace_map:
            return None
        return self.tree

    def _parse_line(self, line: str) -> Optional[TraceCall]:
        """
        Parse a single trace line into a TraceCall.

        Returns:
            TraceCall, or None for signals, exits, unfinished halves and garbage
        """
        line = line.rstrip("\n")
        if not line.strip():
            return None

        match = self.LINE_PREFIX.match(line)
        pid_text = match.group("pid") or match.group("bpid")
        pid = int(pid_text) if pid_text else 0
        rest = match.group("rest")

        if rest.startswith(("+++", "---")):
            return None

        resumed = self.RESUMED.match(rest)
        if resumed:
            head = self.unfinished.pop(pid, None)
            if head is None:
                self.parse_errors += 1
                return None
            rest = head + resumed.group(2)

        unfinished = self.UNFINISHED.search(rest)
        if unfinished:
            self.unfinished[pid] = rest[:unfinished.start()]
            return None

        parts = _split_call(rest)
        if parts is None:
            self.parse_errors += 1
            logger.debug(f"Failed to parse line: {line[:100]}")
            return None
        name, args_text, tail = parts

        ret_match = self.RETURN.match(tail)
        if not ret_match:
            self.parse_errors += 1
            logger.debug(f"No return value in line: {line[:100]}")
            return None

        try:
            args = parse_args(args_text)
        except (ArgParseError, ValueError, IndexError, AttributeError) as e:
            self.parse_errors += 1
            logger.debug(f"Failed to parse arguments of {name}: {str(e)[:100]}")
            return None

        ret_text = ret_match.group("ret")
        ret = parse_int(ret_text) if ret_text != "?" else 0
        return TraceCall(
            pid=pid,
            name=name,
            args=args,
            ret=ret if ret is not None else 0,
            errno=ret_match.group("errno"),
            raw_line=line,
        )

    def get_statistics(self) -> Dict[str, int]:
        """Get parsing statistics."""
        return {
            'total_lines': self.total_lines,
            'total_calls': self.tree.num_calls,
            'parse_errors': self.parse_errors,
            'processes': len(self.tree.trace_map),
            'unfinished': len(self.unfinished),
        }


def parse(filename) -> Optional[TraceTree]:
    """Parse a trace file; None means the file holds no usable trace."""
    return TraceParser(Path(filename)).parse()
