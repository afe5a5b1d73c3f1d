from __future__ import annotations

import hashlib
import importlib.util
import os
import re
import sys
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Sequence

from lexer import StackError


EXTENSION_API_VERSION = 1
POINTER_SUFFIX = ".stkx"

# Extensions shipped next to the interpreter and installed by default.
BUNDLED_EXTENSIONS_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "ext")
BUNDLED_EXTENSIONS = ("image.py",)

# Value types implemented by the interpreter itself.
CORE_TYPES = ("number", "string", "bool", "list", "error")

EVENTS = ("program_start", "before_token", "after_token", "program_end")


class ExtensionError(StackError):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    path: str = ""


@dataclass(frozen=True)
class TypeContext:
    interpreter: Any


@dataclass(frozen=True)
class StepContext:
    step_index: int
    token: str
    depth: int


# ---- Types ----

TypeRenderer = Callable[[TypeContext, Any], str]


@dataclass(frozen=True)
class TypeSpec:
    name: str
    to_str: TypeRenderer
    owner: str = ""


class TypeRegistry:
    """Names and text renderers of the value types extensions introduce."""

    def __init__(self, reserved: Sequence[str] = ()) -> None:
        self.specs: Dict[str, TypeSpec] = {}
        self.reserved = set(reserved)

    def define(self, spec: TypeSpec) -> None:
        if not isinstance(spec.name, str) or not spec.name:
            raise ExtensionError("Type name must be a non-empty string")
        if spec.name in self.reserved:
            raise ExtensionError(f"Type '{spec.name}' is built in and cannot be redefined")
        if spec.name in self.specs:
            owner = self.specs[spec.name].owner or "another extension"
            raise ExtensionError(f"Type '{spec.name}' is already defined by {owner}")
        self.specs[spec.name] = spec

    def has(self, name: str) -> bool:
        return name in self.specs

    def get_optional(self, name: str) -> Optional[TypeSpec]:
        return self.specs.get(name)


# ---- Hooks ----

EventHandler = Callable[..., None]
StepHandler = Callable[[Any, StepContext], None]


@dataclass(frozen=True)
class Subscription:
    priority: int
    handler: EventHandler
    owner: str


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: StepHandler
    owner: str


class HookRegistry:
    def __init__(self) -> None:
        self.subscriptions: Dict[str, List[Subscription]] = {event: [] for event in EVENTS}
        self.step_rules: List[StepRule] = []

    def on_event(self, event: str, handler: EventHandler, *, priority: int = 0, owner: str = "") -> None:
        if event not in self.subscriptions:
            raise ExtensionError(f"Unknown event '{event}'; expected one of {', '.join(EVENTS)}")
        subs = self.subscriptions[event]
        subs.append(Subscription(priority=priority, handler=handler, owner=owner))
        # Higher priority first; equal priorities keep registration order.
        subs.sort(key=lambda sub: -sub.priority)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for sub in self.subscriptions.get(event, ()):
            sub.handler(*args, **kwargs)

    def add_step_rule(self, rule: StepRule) -> None:
        if rule.every_n < 1:
            raise ExtensionError(f"Step rule '{rule.name}' must run at least every 1 step")
        self.step_rules.append(rule)

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self.step_rules:
            if ctx.step_index % rule.every_n == 0:
                rule.handler(interpreter, ctx)


# ---- Services ----

OperatorImpl = Callable[..., Any]


@dataclass(frozen=True)
class OperatorSpec:
    name: str
    arity: int
    impl: OperatorImpl
    doc: str = ""
    owner: str = ""


@dataclass
class RuntimeServices:
    """Everything extensions contribute, shared by an interpreter and its clones."""

    metadata: List[ExtensionMetadata] = field(default_factory=list)
    type_registry: TypeRegistry = field(default_factory=lambda: TypeRegistry(reserved=CORE_TYPES))
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    # Attached to each interpreter's builtins table when it is constructed.
    operators: List[OperatorSpec] = field(default_factory=list)


class ExtensionAPI:
    """Registration surface handed to an extension's ``stack_register``."""

    def __init__(self, services: RuntimeServices, *, owner: str) -> None:
        self.services = services
        self.owner = owner

    def metadata(self, *, name: str, version: str = "0.0.0") -> None:
        self.services.metadata.append(ExtensionMetadata(name=name, version=version))

    def register_operator(self, name: str, arity: int, impl: OperatorImpl, *, doc: str = "") -> None:
        if not name:
            raise ExtensionError("Operator name must be non-empty")
        if arity < 0:
            raise ExtensionError(f"Operator '{name}' cannot take a negative number of operands")
        self.services.operators.append(
            OperatorSpec(name=name, arity=int(arity), impl=impl, doc=doc, owner=self.owner)
        )

    def operator(self, name: str, arity: int, *, doc: str = "") -> Callable[[OperatorImpl], OperatorImpl]:
        def deco(fn: OperatorImpl) -> OperatorImpl:
            self.register_operator(name, arity, fn, doc=doc)
            return fn

        return deco

    def register_type(self, name: str, *, to_str: TypeRenderer) -> None:
        self.services.type_registry.define(TypeSpec(name=name, to_str=to_str, owner=self.owner))

    def on_event(self, event: str, handler: Optional[EventHandler] = None, *, priority: int = 0):
        def attach(fn: EventHandler) -> EventHandler:
            self.services.hook_registry.on_event(event, fn, priority=priority, owner=self.owner)
            return fn

        return attach if handler is None else attach(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def attach(fn: StepHandler) -> StepHandler:
            rule = StepRule(name=name or fn.__name__, every_n=every_n, handler=fn, owner=self.owner)
            self.services.hook_registry.add_step_rule(rule)
            return fn

        return attach if handler is None else attach(handler)


# ---- Loading ----

def _module_name(path: str) -> str:
    stem = re.sub(r"\W", "_", os.path.splitext(os.path.basename(path))[0])
    digest = hashlib.sha256(path.encode("utf-8")).hexdigest()[:12]
    return f"stk_ext_{stem}_{digest}"


def load_extension_module(path: str) -> ModuleType:
    path = os.path.abspath(path)
    if not os.path.isfile(path):
        raise ExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_module_name(path), path)
    if spec is None or spec.loader is None:
        raise ExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Sibling modules of the extension are importable while it loads.
    ext_dir = os.path.dirname(path)
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def read_stkx(pointer_file: str) -> List[str]:
    """Return the extension paths listed in a ``.stkx`` pointer file.

    One path per line, relative to the pointer file's directory; ``#`` starts
    a comment that runs to the end of the line.
    """
    if not os.path.isfile(pointer_file):
        raise ExtensionError(f"{POINTER_SUFFIX} file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    paths: List[str] = []
    with open(pointer_file, "r", encoding="utf-8") as handle:
        for raw in handle:
            entry = raw.split("#", 1)[0].strip()
            if entry:
                paths.append(os.path.normpath(os.path.join(base_dir, entry)))
    return paths


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    gathered: List[str] = []
    for path in paths:
        if path.lower().endswith(POINTER_SUFFIX):
            gathered.extend(read_stkx(path))
        else:
            gathered.append(os.path.abspath(path))
    return gathered


def install_extension(services: RuntimeServices, path: str) -> str:
    module = load_extension_module(path)
    required = getattr(module, "STACK_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
    if required != EXTENSION_API_VERSION:
        raise ExtensionError(
            f"Extension {path} requires API {required}, host supports {EXTENSION_API_VERSION}"
        )
    register = getattr(module, "stack_register", None)
    if not callable(register):
        raise ExtensionError(f"Extension {path} must define callable stack_register(ext)")
    owner = str(getattr(module, "STACK_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
    register(ExtensionAPI(services, owner=owner))
    if not any(meta.name == owner for meta in services.metadata):
        services.metadata.append(ExtensionMetadata(name=owner, path=os.path.abspath(path)))
    return owner


def build_default_services(*, bundled: bool = True) -> RuntimeServices:
    services = RuntimeServices()
    if bundled:
        for filename in BUNDLED_EXTENSIONS:
            install_extension(services, os.path.join(BUNDLED_EXTENSIONS_DIR, filename))
    return services


def load_runtime_services(paths: Sequence[str]) -> RuntimeServices:
    services = build_default_services()
    for path in gather_extension_paths(paths):
        install_extension(services, path)
    return services
