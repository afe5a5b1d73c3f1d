from __future__ import annotations
import math
import os
import random
import re
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional

import numpy as np

from extensions import (
    ExtensionError,
    HookRegistry,
    RuntimeServices,
    StepContext,
    TypeContext,
    TypeRegistry,
    build_default_services,
)
from lexer import Lexer, StackError, unescape_text


TYPE_NUMBER = "number"
TYPE_STRING = "string"
TYPE_BOOL = "bool"
TYPE_LIST = "list"
TYPE_ERROR = "error"

MODE_DEBUG = "debug"
MODE_SCRIPT = "script"

# Nested evaluations (blocks, lists, eval, loops) deeper than this push an
# error instead of recursing further.
DEFAULT_MAX_DEPTH = 160
HISTORY_LIMIT = 4096

RESOURCE_PLACEHOLDER = "{Resource}"

_NUMBER_RE = re.compile(
    r"[+-]?(?:inf|infinity|nan|[0-9]+\.?[0-9]*(?:e[+-]?[0-9]+)?|\.[0-9]+(?:e[+-]?[0-9]+)?)",
    re.IGNORECASE | re.ASCII,
)


@dataclass
class Value:
    type: str
    value: Any


class StackRuntimeError(StackError):
    """Raised when host-side machinery (hooks, step rules) fails."""

    def __init__(self, message: str, *, token: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.token = token


class ExitSignal(Exception):
    def __init__(self, code: int = 0) -> None:
        super().__init__(code)
        self.code = code


# ---- Coercions ----

def parse_number(text: str) -> Optional[float]:
    if _NUMBER_RE.fullmatch(text) is None:
        return None
    return float(text)


def format_number(number: float) -> str:
    if math.isnan(number):
        return "NaN"
    if math.isinf(number):
        return "inf" if number > 0 else "-inf"
    return np.format_float_positional(number, trim="-")


def display(value: Value, types: Optional[TypeRegistry] = None) -> str:
    # Walks nested lists with an explicit work stack; list depth is unbounded.
    parts: List[str] = []
    pending: List[Any] = [value]
    while pending:
        item = pending.pop()
        if isinstance(item, str):
            parts.append(item)
        elif item.type == TYPE_STRING:
            parts.append(f"({item.value})")
        elif item.type == TYPE_LIST:
            pending.append("]")
            for position in range(len(item.value) - 1, -1, -1):
                pending.append(item.value[position])
                if position:
                    pending.append(" ")
            pending.append("[")
        else:
            parts.append(to_text(item, types))
    return "".join(parts)


def to_text(value: Value, types: Optional[TypeRegistry] = None) -> str:
    kind = value.type
    if kind == TYPE_STRING:
        return value.value
    if kind == TYPE_NUMBER:
        return format_number(value.value)
    if kind == TYPE_BOOL:
        return "true" if value.value else "false"
    if kind == TYPE_LIST:
        # Elements render as in traces, so list text reads back as the same list.
        return display(value, types)
    if kind == TYPE_ERROR:
        return f"error:{value.value}"
    spec = types.get_optional(kind) if types is not None else None
    if spec is None:
        return RESOURCE_PLACEHOLDER
    return spec.to_str(TypeContext(interpreter=None), value)


def to_number(value: Value) -> float:
    kind = value.type
    if kind == TYPE_NUMBER:
        return value.value
    if kind in (TYPE_STRING, TYPE_ERROR):
        parsed = parse_number(value.value)
        return 0.0 if parsed is None else parsed
    if kind == TYPE_BOOL:
        return 1.0 if value.value else 0.0
    if kind == TYPE_LIST:
        return float(len(value.value))
    return 1.0


def to_bool(value: Value) -> bool:
    kind = value.type
    if kind == TYPE_NUMBER:
        return value.value != 0.0
    if kind in (TYPE_STRING, TYPE_LIST):
        return len(value.value) > 0
    if kind == TYPE_BOOL:
        return bool(value.value)
    if kind == TYPE_ERROR:
        return value.value == "true"
    return True


def to_list(value: Value) -> List[Value]:
    kind = value.type
    if kind == TYPE_LIST:
        return list(value.value)
    if kind == TYPE_STRING:
        return [Value(TYPE_STRING, ch) for ch in value.value]
    if kind in (TYPE_NUMBER, TYPE_BOOL, TYPE_ERROR):
        return [Value(kind, value.value)]
    return []


def copy_value(value: Value) -> Value:
    if value.type != TYPE_LIST:
        return Value(value.type, value.value)
    root = Value(TYPE_LIST, [])
    pending = [(value.value, root.value)]
    while pending:
        source, target = pending.pop()
        for item in source:
            if item.type == TYPE_LIST:
                twin = Value(TYPE_LIST, [])
                pending.append((item.value, twin.value))
                target.append(twin)
            else:
                target.append(Value(item.type, item.value))
    return root


def _to_usize(number: float) -> int:
    # Saturating conversion used for indices and counts.
    if math.isnan(number) or number <= 0:
        return 0
    if math.isinf(number):
        return sys.maxsize
    return min(int(number), sys.maxsize)


def _to_i32(number: float) -> int:
    if math.isnan(number):
        return 0
    if number >= 2**31 - 1:
        return 2**31 - 1
    if number <= -(2**31):
        return -(2**31)
    return int(number)


def _round_half_away(number: float) -> float:
    if not math.isfinite(number):
        return number
    rounded = float(math.trunc(number))
    if abs(number - rounded) >= 0.5:
        rounded += math.copysign(1.0, number)
    return math.copysign(rounded, number)


def _unescape_output(text: str) -> str:
    return text.replace("\\n", "\n").replace("\\t", "\t").replace("\\r", "\r")


def _write_stdout(text: str) -> None:
    sys.stdout.write(text)
    sys.stdout.flush()


@dataclass
class Environment:
    values: Dict[str, Value] = field(default_factory=dict)

    def set(self, name: str, value: Value) -> None:
        self.values[name] = value

    def get_optional(self, name: str) -> Optional[Value]:
        return self.values.get(name)

    def delete(self, name: str) -> None:
        # Removing an unknown name is not an error.
        self.values.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self.values

    def names(self) -> List[str]:
        return list(self.values.keys())


@dataclass
class StateEntry:
    step_index: int
    token: str
    depth: int
    stack_size: int


class StateLogger:
    def __init__(self, limit: int = HISTORY_LIMIT) -> None:
        self.entries: Deque[StateEntry] = deque(maxlen=limit)
        self.next_step_index = 0

    def record(self, *, token: str, depth: int, stack_size: int) -> StateEntry:
        entry = StateEntry(
            step_index=self.next_step_index,
            token=token,
            depth=depth,
            stack_size=stack_size,
        )
        self.entries.append(entry)
        self.next_step_index += 1
        return entry


BuiltinImpl = Callable[["Interpreter", List[Value]], Optional[Value]]


@dataclass
class BuiltinFunction:
    name: str
    arity: int
    impl: BuiltinImpl


class Builtins:
    def __init__(self) -> None:
        self.table: Dict[str, BuiltinFunction] = {}
        # Arithmetic follows IEEE-754: no operation here ever raises.
        self._register_numeric("add", 2, lambda a, b: a + b)
        self._register_numeric("sub", 2, lambda a, b: a - b)
        self._register_numeric("mul", 2, lambda a, b: a * b)
        self._register_numeric("div", 2, np.divide)
        self._register_numeric("mod", 2, np.fmod)
        self._register_numeric("pow", 2, np.power)
        self._register_numeric("round", 1, _round_half_away)
        self._register_numeric("sin", 1, np.sin)
        self._register_numeric("cos", 1, np.cos)
        self._register_numeric("tan", 1, np.tan)
        self._register_numeric("exp", 1, np.exp)
        self._register_logical("and", 2, lambda a, b: a and b)
        self._register_logical("or", 2, lambda a, b: a or b)
        self._register_logical("not", 1, lambda a: not a)
        self._register_custom("equal", 2, self._equal)
        self._register_custom("less", 2, self._less)
        self._register_custom("rand", 1, self._rand)
        self._register_custom("shuffle", 1, self._shuffle)
        # Text
        self._register_custom("repeat", 2, self._repeat)
        self._register_custom("decode", 1, self._decode)
        self._register_custom("encode", 1, self._encode)
        self._register_custom("concat", 2, self._concat)
        self._register_custom("replace", 3, self._replace)
        self._register_custom("split", 2, self._split)
        self._register_custom("case", 2, self._case)
        self._register_custom("join", 2, self._join)
        self._register_custom("find", 2, self._find)
        self._register_custom("regex", 2, self._regex)
        # I/O
        self._register_custom("write-file", 1, self._write_file)
        self._register_custom("read-file", 1, self._read_file)
        self._register_custom("input", 1, self._input)
        self._register_custom("print", 1, self._print)
        self._register_custom("println", 1, self._println)
        self._register_custom("args-cmd", 0, self._args_cmd)
        # Control
        self._register_custom("eval", 1, self._eval)
        self._register_custom("if", 3, self._if)
        self._register_custom("while", 2, self._while)
        self._register_custom("thread", 1, self._thread)
        self._register_custom("exit", 1, self._exit)
        # Lists
        self._register_custom("get", 2, self._get)
        self._register_custom("set", 3, self._set)
        self._register_custom("del", 2, self._del)
        self._register_custom("append", 2, self._append)
        self._register_custom("insert", 3, self._insert)
        self._register_custom("index", 2, self._index)
        self._register_custom("sort", 1, self._sort)
        self._register_custom("reverse", 1, self._reverse)
        self._register_custom("for", 3, self._for)
        self._register_custom("range", 3, self._range)
        self._register_custom("len", 1, self._len)
        # Functional
        self._register_custom("map", 3, self._map)
        self._register_custom("filter", 3, self._filter)
        self._register_custom("reduce", 5, self._reduce)
        # Memory
        self._register_custom("pop", 1, lambda _, __: None)
        self._register_custom("size-stack", 0, self._size_stack)
        self._register_custom("get-stack", 0, self._get_stack)
        self._register_custom("var", 2, self._var)
        self._register_custom("type", 1, self._type)
        self._register_custom("cast", 2, self._cast)
        self._register_custom("mem", 0, self._mem)
        self._register_custom("free", 1, self._free)
        self._register_custom("copy", 1, self._copy)
        self._register_custom("swap", 2, self._swap)
        # Time
        self._register_custom("now-time", 0, self._now_time)
        self._register_custom("sleep", 1, self._sleep)

    def _register_numeric(self, name: str, arity: int, func: Callable[..., Any]) -> None:
        def impl(_: "Interpreter", args: List[Value]) -> Value:
            numbers = [np.float64(to_number(arg)) for arg in args]
            with np.errstate(all="ignore"):
                result = func(*numbers)
            return Value(TYPE_NUMBER, float(result))

        self.table[name] = BuiltinFunction(name=name, arity=arity, impl=impl)

    def _register_logical(self, name: str, arity: int, func: Callable[..., bool]) -> None:
        def impl(_: "Interpreter", args: List[Value]) -> Value:
            return Value(TYPE_BOOL, bool(func(*[to_bool(arg) for arg in args])))

        self.table[name] = BuiltinFunction(name=name, arity=arity, impl=impl)

    def _register_custom(self, name: str, arity: int, impl: BuiltinImpl) -> None:
        self.table[name] = BuiltinFunction(name=name, arity=arity, impl=impl)

    def register_extension_operator(self, *, name: str, arity: int, impl: BuiltinImpl) -> None:
        if name in self.table:
            raise ExtensionError(f"Cannot override existing operator '{name}'")
        self.table[name] = BuiltinFunction(name=name, arity=arity, impl=impl)

    def has(self, name: str) -> bool:
        return name in self.table

    def invoke(self, interpreter: "Interpreter", name: str) -> None:
        builtin = self.table[name]
        # The last-pushed operand is popped first; impls see push order.
        args = [interpreter.pop() for _ in range(builtin.arity)]
        args.reverse()
        result = builtin.impl(interpreter, args)
        if result is not None:
            interpreter.push(result)

    # ---- comparison / random ----

    def _equal(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        return Value(TYPE_BOOL, interpreter.to_text(args[0]) == interpreter.to_text(args[1]))

    def _less(self, _: "Interpreter", args: List[Value]) -> Value:
        return Value(TYPE_BOOL, to_number(args[0]) < to_number(args[1]))

    def _rand(self, _: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        if not items:
            return Value(TYPE_LIST, items)
        return random.choice(items)

    def _shuffle(self, _: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        random.shuffle(items)
        return Value(TYPE_LIST, items)

    # ---- text ----

    def _repeat(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text = interpreter.to_text(args[0])
        return Value(TYPE_STRING, text * _to_usize(to_number(args[1])))

    def _decode(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        number = to_number(args[0])
        code = 0 if math.isnan(number) or number < 0 else int(min(number, 0xFFFFFFFF))
        if code > 0x10FFFF or 0xD800 <= code <= 0xDFFF:
            interpreter.log_print("Error! failed of number decoding\n")
            return Value(TYPE_ERROR, "number-decoding")
        return Value(TYPE_STRING, chr(code))

    def _encode(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text = interpreter.to_text(args[0])
        if not text:
            interpreter.log_print("Error! failed of string encoding\n")
            return Value(TYPE_ERROR, "string-encoding")
        return Value(TYPE_NUMBER, float(ord(text[0])))

    def _concat(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        return Value(TYPE_STRING, interpreter.to_text(args[0]) + interpreter.to_text(args[1]))

    def _replace(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text, before, after = (interpreter.to_text(arg) for arg in args)
        return Value(TYPE_STRING, text.replace(before, after))

    def _split(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text = interpreter.to_text(args[0])
        key = interpreter.to_text(args[1])
        if key:
            parts = text.split(key)
        else:
            # An empty separator matches between every character and at both ends.
            parts = [""] + list(text) + [""]
        return Value(TYPE_LIST, [Value(TYPE_STRING, part) for part in parts])

    def _case(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text = interpreter.to_text(args[0])
        style = interpreter.to_text(args[1])
        if style == "lower":
            text = text.lower()
        elif style == "upper":
            text = text.upper()
        return Value(TYPE_STRING, text)

    def _join(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        key = interpreter.to_text(args[1])
        return Value(TYPE_STRING, key.join(interpreter.to_text(item) for item in to_list(args[0])))

    def _find(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        return Value(TYPE_BOOL, interpreter.to_text(args[1]) in interpreter.to_text(args[0]))

    def _regex(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        text = interpreter.to_text(args[0])
        try:
            pattern = re.compile(interpreter.to_text(args[1]))
        except (re.error, OverflowError, RecursionError) as exc:
            interpreter.log_print(f"Error! {exc}\n")
            return Value(TYPE_ERROR, "regex")
        return Value(TYPE_LIST, [Value(TYPE_STRING, m.group(0)) for m in pattern.finditer(text)])

    # ---- I/O ----

    def _write_file(self, interpreter: "Interpreter", args: List[Value]) -> Optional[Value]:
        path = interpreter.to_text(args[0])
        try:
            handle = open(path, "w", encoding="utf-8", newline="")
        except (OSError, ValueError) as exc:
            interpreter.log_print(f"Error! {exc}\n")
            return Value(TYPE_ERROR, "create-file")
        # The content is only taken off the stack once the file exists.
        content = interpreter.to_text(interpreter.pop())
        with handle:
            try:
                handle.write(content)
            except OSError as exc:
                interpreter.log_print(f"Error! {exc}\n")
                return Value(TYPE_ERROR, "write-file")
        return None

    def _read_file(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        path = interpreter.to_text(args[0])
        try:
            with open(path, "r", encoding="utf-8", newline="") as handle:
                data = handle.read()
        except (OSError, ValueError) as exc:
            interpreter.log_print(f"Error! {exc}\n")
            return Value(TYPE_ERROR, "read-file")
        return Value(TYPE_STRING, data)

    def _input(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        interpreter.output_sink(interpreter.to_text(args[0]))
        line = interpreter.input_provider()
        return Value(TYPE_STRING, line.strip())

    def _print(self, interpreter: "Interpreter", args: List[Value]) -> None:
        text = _unescape_output(interpreter.to_text(args[0]))
        if interpreter.is_debug:
            interpreter.output_sink(f"[Output]: {text}\n")
        else:
            interpreter.output_sink(text)

    def _println(self, interpreter: "Interpreter", args: List[Value]) -> None:
        text = _unescape_output(interpreter.to_text(args[0]))
        if interpreter.is_debug:
            interpreter.output_sink(f"[Output]: {text}\n")
        else:
            interpreter.output_sink(text + "\n")

    def _args_cmd(self, interpreter: "Interpreter", _: List[Value]) -> Value:
        return Value(TYPE_LIST, [Value(TYPE_STRING, str(arg)) for arg in interpreter.argv])

    # ---- control ----

    def _eval(self, interpreter: "Interpreter", args: List[Value]) -> None:
        interpreter.evaluate_program(interpreter.to_text(args[0]))

    def _if(self, interpreter: "Interpreter", args: List[Value]) -> None:
        code_if, code_else, condition = args
        if to_bool(condition):
            interpreter.evaluate_program(interpreter.to_text(code_if))
        else:
            interpreter.evaluate_program(interpreter.to_text(code_else))

    def _while(self, interpreter: "Interpreter", args: List[Value]) -> None:
        code = interpreter.to_text(args[0])
        condition = interpreter.to_text(args[1])
        while True:
            interpreter.evaluate_program(condition)
            if not to_bool(interpreter.pop()):
                break
            interpreter.evaluate_program(code)

    def _thread(self, interpreter: "Interpreter", args: List[Value]) -> None:
        interpreter.spawn(interpreter.to_text(args[0]))

    def _exit(self, _: "Interpreter", args: List[Value]) -> None:
        raise ExitSignal(_to_i32(to_number(args[0])))

    # ---- lists ----

    def _out_of_range(self, interpreter: "Interpreter") -> Value:
        interpreter.log_print("Error! Index specification is out of range\n")
        return Value(TYPE_ERROR, "index-out-range")

    def _get(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        index = _to_usize(to_number(args[1]))
        if index >= len(items):
            return self._out_of_range(interpreter)
        return copy_value(items[index])

    def _set(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        index = _to_usize(to_number(args[1]))
        if index >= len(items):
            return self._out_of_range(interpreter)
        items[index] = args[2]
        return Value(TYPE_LIST, items)

    def _del(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        index = _to_usize(to_number(args[1]))
        if index >= len(items):
            return self._out_of_range(interpreter)
        del items[index]
        return Value(TYPE_LIST, items)

    def _append(self, _: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        items.append(args[1])
        return Value(TYPE_LIST, items)

    def _insert(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        index = _to_usize(to_number(args[1]))
        if index > len(items):
            return self._out_of_range(interpreter)
        items.insert(index, args[2])
        return Value(TYPE_LIST, items)

    def _index(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        target = interpreter.to_text(args[1])
        for position, item in enumerate(to_list(args[0])):
            if interpreter.to_text(item) == target:
                return Value(TYPE_NUMBER, float(position))
        interpreter.log_print("Error! item not found in the list\n")
        return Value(TYPE_ERROR, "item-not-found")

    def _sort(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        texts = sorted(interpreter.to_text(item) for item in to_list(args[0]))
        return Value(TYPE_LIST, [Value(TYPE_STRING, text) for text in texts])

    def _reverse(self, _: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        items.reverse()
        return Value(TYPE_LIST, items)

    def _for(self, interpreter: "Interpreter", args: List[Value]) -> None:
        items = to_list(args[0])
        name = interpreter.to_text(args[1])
        code = interpreter.to_text(args[2])
        for item in items:
            interpreter.env.set(name, item)
            interpreter.evaluate_program(code)

    def _range(self, _: "Interpreter", args: List[Value]) -> Value:
        current, stop, step = (to_number(arg) for arg in args)
        out: List[Value] = []
        if not step > 0:
            return Value(TYPE_LIST, out)
        while current < stop:
            out.append(Value(TYPE_NUMBER, current))
            following = current + step
            if not following > current:
                break
            current = following
        return Value(TYPE_LIST, out)

    def _len(self, _: "Interpreter", args: List[Value]) -> Value:
        return Value(TYPE_NUMBER, float(len(to_list(args[0]))))

    # ---- functional ----

    def _map(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        name = interpreter.to_text(args[1])
        code = interpreter.to_text(args[2])
        out: List[Value] = []
        for item in items:
            interpreter.env.set(name, item)
            interpreter.evaluate_program(code)
            out.append(interpreter.pop())
        return Value(TYPE_LIST, out)

    def _filter(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        name = interpreter.to_text(args[1])
        code = interpreter.to_text(args[2])
        out: List[Value] = []
        for item in items:
            interpreter.env.set(name, item)
            interpreter.evaluate_program(code)
            if to_bool(interpreter.pop()):
                out.append(item)
        return Value(TYPE_LIST, out)

    def _reduce(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        items = to_list(args[0])
        acc = interpreter.to_text(args[1])
        init = args[2]
        now = interpreter.to_text(args[3])
        code = interpreter.to_text(args[4])
        env = interpreter.env

        env.set(acc, init)
        for item in items:
            env.set(now, item)
            interpreter.evaluate_program(code)
            env.set(acc, interpreter.pop())

        result = env.get_optional(acc)
        # The accumulator is left holding an empty string afterwards.
        env.set(acc, Value(TYPE_STRING, ""))
        return result if result is not None else Value(TYPE_STRING, "")

    # ---- memory ----

    def _size_stack(self, interpreter: "Interpreter", _: List[Value]) -> Value:
        return Value(TYPE_NUMBER, float(len(interpreter.stack)))

    def _get_stack(self, interpreter: "Interpreter", _: List[Value]) -> Value:
        return Value(TYPE_LIST, [copy_value(item) for item in interpreter.stack])

    def _var(self, interpreter: "Interpreter", args: List[Value]) -> None:
        interpreter.env.set(interpreter.to_text(args[1]), args[0])
        interpreter.show_variables()

    def _type(self, _: "Interpreter", args: List[Value]) -> Value:
        # Extension types report their registered name.
        return Value(TYPE_STRING, args[0].type)

    def _cast(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        value = args[0]
        target = interpreter.to_text(args[1])
        if target == TYPE_NUMBER:
            return Value(TYPE_NUMBER, to_number(value))
        if target == TYPE_STRING:
            return Value(TYPE_STRING, interpreter.to_text(value))
        if target == TYPE_BOOL:
            return Value(TYPE_BOOL, to_bool(value))
        if target == TYPE_LIST:
            return Value(TYPE_LIST, to_list(value))
        if target == TYPE_ERROR:
            return Value(TYPE_ERROR, interpreter.to_text(value))
        return value

    def _mem(self, interpreter: "Interpreter", _: List[Value]) -> Value:
        return Value(TYPE_LIST, [Value(TYPE_STRING, name) for name in interpreter.env.names()])

    def _free(self, interpreter: "Interpreter", args: List[Value]) -> None:
        interpreter.env.delete(interpreter.to_text(args[0]))
        interpreter.show_variables()

    def _copy(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        interpreter.push(args[0])
        return copy_value(args[0])

    def _swap(self, interpreter: "Interpreter", args: List[Value]) -> Value:
        interpreter.push(args[1])
        return args[0]

    # ---- time ----

    def _now_time(self, _: "Interpreter", __: List[Value]) -> Value:
        return Value(TYPE_NUMBER, time.time())

    def _sleep(self, _: "Interpreter", args: List[Value]) -> None:
        seconds = to_number(args[0])
        if math.isfinite(seconds) and seconds > 0:
            time.sleep(seconds)


class Interpreter:
    def __init__(
        self,
        *,
        mode: str = MODE_SCRIPT,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[str], None]] = None,
        argv: Optional[List[str]] = None,
        max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.mode = mode
        self.services = services or build_default_services()
        self.type_registry: TypeRegistry = self.services.type_registry
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or sys.stdin.readline
        self.output_sink = output_sink or _write_stdout
        self.argv: List[str] = list(sys.argv) if argv is None else list(argv)
        self.max_depth = max_depth
        self.builtins = Builtins()

        # Extension operators join the builtins table but never replace a command.
        for op in self.services.operators:
            self.builtins.register_extension_operator(name=op.name, arity=op.arity, impl=op.impl)

        self.stack: List[Value] = []
        self.env = Environment()
        self.logger = StateLogger()
        self.depth = 0
        self.spawned: List[threading.Thread] = []

    @property
    def is_debug(self) -> bool:
        return self.mode == MODE_DEBUG

    # ---- coercions bound to this interpreter's type registry ----

    def to_text(self, value: Value) -> str:
        return to_text(value, self.type_registry)

    def display(self, value: Value) -> str:
        return display(value, self.type_registry)

    # ---- diagnostics ----

    def log_print(self, message: str) -> None:
        if self.is_debug:
            self.output_sink(message)

    def show_stack(self) -> str:
        return "Stack〔 " + " | ".join(self.display(item) for item in self.stack) + " 〕"

    def show_variables(self) -> None:
        if not self.is_debug:
            return
        self.log_print("Variables {\n")
        width = max((len(name) for name in self.env.values), default=0)
        for name, value in self.env.values.items():
            self.log_print(f" {name:>{width}}: {self.display(value)}\n")
        self.log_print("}\n")

    # ---- stack ----

    def push(self, value: Value) -> None:
        self.stack.append(value)

    def pop(self) -> Value:
        if self.stack:
            return self.stack.pop()
        self.log_print("Error! There are not enough values on the stack. returns default value\n")
        return Value(TYPE_STRING, "")

    # ---- evaluation ----

    def evaluate_program(self, code: str) -> None:
        """Run ``code`` against the shared stack and environment.

        Nested blocks, list literals, ``eval`` and the looping commands all
        re-enter here, so a block sees and mutates exactly the same state as
        its caller. Nothing is reset on return.
        """
        if self.depth >= self.max_depth:
            self.log_print("Error! Evaluation depth limit exceeded\n")
            self.push(Value(TYPE_ERROR, "recursion-depth"))
            return

        tokens = Lexer(code).tokenize()
        top_level = self.depth == 0
        if top_level:
            self._emit_event("program_start", self, tokens)
        self.depth += 1
        try:
            for token in tokens:
                if self.is_debug:
                    self.log_print(f"{self.show_stack()} ←  {token}\n")
                self._log_step(token)
                self._emit_event("before_token", self, token)
                self._evaluate_token(token)
                self._emit_event("after_token", self, token)
            if self.is_debug:
                self.log_print(f"{self.show_stack()}\n")
        finally:
            self.depth -= 1
        if top_level:
            self._emit_event("program_end", self)

    def _evaluate_token(self, token: str) -> None:
        number = parse_number(token)
        if number is not None:
            self.push(Value(TYPE_NUMBER, number))
        elif token == "true" or token == "false":
            self.push(Value(TYPE_BOOL, token == "true"))
        elif token.startswith("(") and token.endswith(")"):
            self.push(Value(TYPE_STRING, unescape_text(token[1:-1])))
        elif token.startswith("[") and token.endswith("]"):
            base = len(self.stack)
            self.evaluate_program(token[1:-1])
            items = self.stack[base:]
            del self.stack[base:]
            self.push(Value(TYPE_LIST, items))
        elif token.startswith("error:"):
            self.push(Value(TYPE_ERROR, token.replace("error:", "")))
        elif self.env.has(token):
            # Variables shadow commands of the same name.
            self.push(copy_value(self.env.values[token]))
        elif token.startswith("#") and token.endswith("#"):
            self.log_print(f"* Comment \"{token.replace('#', '')}\"\n")
        elif self.builtins.has(token):
            self.builtins.invoke(self, token)
        else:
            # Unknown words are string constants.
            self.push(Value(TYPE_STRING, token))

    # ---- concurrency ----

    def clone(self) -> "Interpreter":
        twin = Interpreter(
            mode=self.mode,
            services=self.services,
            input_provider=self.input_provider,
            output_sink=self.output_sink,
            argv=self.argv,
            max_depth=self.max_depth,
        )
        twin.stack = [copy_value(item) for item in self.stack]
        twin.env = Environment({name: copy_value(item) for name, item in self.env.values.items()})
        return twin

    def spawn(self, code: str) -> threading.Thread:
        """Evaluate ``code`` on a snapshot of this interpreter in a new thread.

        The snapshot is taken before the thread starts; nothing the thread does
        is visible here and there is no way to wait for or cancel it from the
        language. Threads are daemons, so they end with the process.
        """
        twin = self.clone()
        thread = threading.Thread(target=twin._run_spawned, args=(code,), daemon=True)
        self.spawned.append(thread)
        thread.start()
        return thread

    def _run_spawned(self, code: str) -> None:
        try:
            self.evaluate_program(code)
        except ExitSignal as sig:
            # EXIT from any thread ends the whole process.
            sys.stdout.flush()
            os._exit(sig.code)

    # ---- hooks ----

    def _emit_event(self, event: str, *args: Any, **kwargs: Any) -> None:
        try:
            self.hook_registry.emit(event, *args, **kwargs)
        except (StackRuntimeError, ExitSignal):
            raise
        except Exception as exc:
            raise StackRuntimeError(f"Extension hook '{event}' failed: {exc}")

    def _log_step(self, token: str) -> None:
        entry = self.logger.record(token=token, depth=self.depth, stack_size=len(self.stack))
        try:
            self.hook_registry.after_step(
                self,
                StepContext(step_index=entry.step_index, token=token, depth=self.depth),
            )
        except (StackRuntimeError, ExitSignal):
            raise
        except Exception as exc:
            raise StackRuntimeError(f"Extension step rule failed: {exc}", token=token)
