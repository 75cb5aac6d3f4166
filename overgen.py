"""Arity-overload dispatcher generator for Python sources.

Rewrites a Python module in which several functions share one logical
name and differ only in their number of parameters. Every variant tagged
with `@overload` (or `@overload(Type)` for constructors and methods) is
renamed to `<name>_<arity>`, and each `dispatchers()` statement is
replaced by one `def <name>(*args)` per logical name that forwards to the
variant matching the call's argument count.

`@typing.overload` and `@typing_extensions.overload` stubs are left alone.
A module that imports `overload` from typing by bare name needs a
different marker: pass `--decorator` with another name.

Usage:
    python overgen.py shapes.py -o shapes_gen.py
"""

import argparse
import ast
import copy
import keyword
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import NamedTuple

DEFAULT_DECORATOR = "overload"
DEFAULT_TRIGGER = "dispatchers"
RECEIVER_NAME = "self"
DISPATCH_ARGS = "args"
TYPING_MODULES = {"typing", "typing_extensions"}


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    source: Path
    output: Path | None
    decorator: str
    trigger: str
    header: bool = True


VALID_CONFIG_ERROR_CODES = {
    "PATH_NOT_FOUND",
    "INVALID_IDENTIFIER",
    "SAME_INPUT_OUTPUT",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_CONFIG_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def is_identifier(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name)


def validate_identifier(name: str, flag: str) -> str:
    if is_identifier(name):
        return name
    raise ConfigError(
        "INVALID_IDENTIFIER",
        f"{flag} must be a Python identifier: {name!r}",
        "Use a plain name such as overload or dispatchers.",
    )


def validate_path_exists(path: Path | None, flag: str) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            f"Pass the path explicitly: {flag} /path/to/module.py",
        )
    if path.is_file():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        "Provide an existing Python source file.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate arity-overload dispatchers for a Python module"
    )

    parser.add_argument("source", type=Path)
    parser.add_argument("-o", "--output", type=Path, default=None)
    parser.add_argument("--decorator", type=str, default=DEFAULT_DECORATOR)
    parser.add_argument("--trigger", type=str, default=DEFAULT_TRIGGER)
    parser.add_argument("--no-header", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig:
    source = validate_path_exists(args.source, "source")
    decorator = validate_identifier(args.decorator, "--decorator")
    trigger = validate_identifier(args.trigger, "--trigger")

    if decorator == trigger:
        raise ConfigError(
            "INVALID_IDENTIFIER",
            f"--decorator and --trigger must differ (both are {decorator!r}).",
            "Pick distinct names for the marker decorator and the trigger call.",
        )

    output = args.output
    if output is not None and output.resolve() == source.resolve():
        raise ConfigError(
            "SAME_INPUT_OUTPUT",
            f"Output would overwrite the source file: {output}",
            "Write the generated module to a different path.",
        )

    return GenerateConfig(
        source=source,
        output=output,
        decorator=decorator,
        trigger=trigger,
        header=not args.no_header,
    )


def build_config(argv: list[str] | None = None) -> GenerateConfig:
    return validate_config(parse_args(argv))


# ===--- Overload errors ---=== #


VALID_OVERLOAD_ERROR_CODES = {
    "DUPLICATE_ARITY",
    "MALFORMED_CONTEXT",
    "UNSUPPORTED_SIGNATURE",
}


class OverloadError(Exception):
    """Build-time failure in a tagged declaration.

    These are logic errors in the input program. They surface from the
    single registration that caused them and are never retried.
    """

    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_OVERLOAD_ERROR_CODES:
            raise ValueError(f"Unknown overload error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


class DuplicateArityError(OverloadError):
    def __init__(self, name: str, arity: int):
        super().__init__(
            "DUPLICATE_ARITY",
            f"Function {name} with {arity} arguments already exists",
            "Overloads are resolved by argument count only; "
            "rename one variant or change its parameter count.",
        )
        self.name = name
        self.arity = arity


class MalformedContextError(OverloadError):
    def __init__(self, context: str):
        super().__init__(
            "MALFORMED_CONTEXT",
            f"Overload context is not a valid type name: {context}",
            "Pass the enclosing class name, e.g. @overload(Point).",
        )
        self.context = context


class UnsupportedSignatureError(OverloadError):
    def __init__(self, name: str, reason: str, suggestion: str | None = None):
        super().__init__(
            "UNSUPPORTED_SIGNATURE",
            f"Function {name} cannot be overloaded: {reason}",
            suggestion
            or "Overloaded functions take a fixed number of positional parameters.",
        )
        self.name = name


# ===--- Data model ---=== #


class CallingConvention(Enum):
    FREE_FUNCTION = "free"
    INSTANCE_METHOD = "instance"
    TYPE_CONSTRUCTOR = "constructor"


@dataclass(frozen=True)
class VariantRecord:
    """One overloaded declaration as seen by the dispatcher.

    Attributes:
        internal_name: Renamed identifier, `<name>_<arity>`.
        arity: Call-site argument count, receiver included.
        convention: How the dispatcher forwards the call.
        context: Owning type name for constructors; None otherwise.
    """

    internal_name: str
    arity: int
    convention: CallingConvention
    context: str | None = None


class Declaration(NamedTuple):
    name: str
    params: tuple[str, ...]
    has_receiver: bool
    is_classmethod: bool


FunctionNode = ast.FunctionDef | ast.AsyncFunctionDef


def dispatch_group_key(name: str, context: str | None = None) -> str:
    if context is None:
        return name
    return f"{context}_{name}"


def internal_name(name: str, arity: int) -> str:
    return f"{name}_{arity}"


# ===--- Registry ---=== #


class OverloadRegistry:
    """Variant records grouped by dispatch-group key.

    Populated by `register_declaration` and emptied by `drain`. All
    access goes through one lock, so concurrent registrations for the
    same key cannot both pass the arity check, and a drain never loses a
    registration: anything inserted after it belongs to the next batch.
    """

    def __init__(self) -> None:
        self._groups: dict[str, dict[int, VariantRecord]] = {}
        self._lock = threading.Lock()

    def register(self, key: str, record: VariantRecord, name: str) -> None:
        with self._lock:
            group = self._groups.setdefault(key, {})
            if record.arity in group:
                raise DuplicateArityError(name, record.arity)
            group[record.arity] = record

    def drain(self) -> dict[str, tuple[VariantRecord, ...]]:
        with self._lock:
            drained = self._sorted_groups()
            self._groups.clear()
        return drained

    def snapshot(self) -> dict[str, tuple[VariantRecord, ...]]:
        with self._lock:
            return self._sorted_groups()

    def variant_count(self) -> int:
        with self._lock:
            return sum(len(group) for group in self._groups.values())

    def is_empty(self) -> bool:
        return len(self) == 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._groups)

    def _sorted_groups(self) -> dict[str, tuple[VariantRecord, ...]]:
        return {
            key: tuple(group[arity] for arity in sorted(group))
            for key, group in self._groups.items()
        }


# ===--- Registrar ---=== #


def _decorator_names(node: FunctionNode) -> set[str]:
    names = set()
    for decorator in node.decorator_list:
        if isinstance(decorator, ast.Name):
            names.add(decorator.id)
        elif isinstance(decorator, ast.Attribute):
            names.add(decorator.attr)
    return names


def parse_declaration(node: FunctionNode) -> Declaration:
    """Reduce a function node to the parts that decide dispatch.

    Raises:
        UnsupportedSignatureError: For *args, **kwargs or keyword-only
            parameters, which leave the argument count open.
    """
    arguments = node.args
    if arguments.vararg is not None:
        raise UnsupportedSignatureError(
            node.name, f"variadic parameter *{arguments.vararg.arg}"
        )
    if arguments.kwarg is not None:
        raise UnsupportedSignatureError(
            node.name, f"keyword parameter **{arguments.kwarg.arg}"
        )
    if arguments.kwonlyargs:
        raise UnsupportedSignatureError(
            node.name,
            f"keyword-only parameter {arguments.kwonlyargs[0].arg}",
        )

    params = tuple(arg.arg for arg in [*arguments.posonlyargs, *arguments.args])
    decorators = _decorator_names(node)
    is_classmethod = "classmethod" in decorators
    is_static = "staticmethod" in decorators or is_classmethod
    has_receiver = not is_static and params[:1] == (RECEIVER_NAME,)

    if is_classmethod:
        if not params:
            raise UnsupportedSignatureError(
                node.name, "classmethod without a class parameter"
            )
        # cls is bound by Python, never passed at the call site
        params = params[1:]

    return Declaration(node.name, params, has_receiver, is_classmethod)


def validate_context(context: str) -> str:
    if is_identifier(context):
        return context
    raise MalformedContextError(context)


def classify(declaration: Declaration, context: str | None) -> CallingConvention:
    if context is None:
        return CallingConvention.FREE_FUNCTION
    if declaration.has_receiver:
        return CallingConvention.INSTANCE_METHOD
    return CallingConvention.TYPE_CONSTRUCTOR


def register_declaration(
    registry: OverloadRegistry,
    node: FunctionNode,
    context: str | None = None,
) -> FunctionNode:
    """Record one tagged declaration and return it under its internal name.

    The returned node is a shallow copy of `node` with only `name`
    replaced; body, decorators, annotations and parameters are shared.

    Raises:
        MalformedContextError: If `context` is not an identifier.
        UnsupportedSignatureError: If the parameter count is not fixed, or
            a classmethod is tagged without its owning type.
        DuplicateArityError: If the group already has this arity.
    """
    if context is not None:
        validate_context(context)

    declaration = parse_declaration(node)
    if declaration.is_classmethod and context is None:
        raise UnsupportedSignatureError(
            declaration.name,
            "classmethod overloads need their owning type",
            f"Name the class in the marker, e.g. @overload(Type) on {declaration.name}.",
        )
    arity = len(declaration.params)
    convention = classify(declaration, context)
    record = VariantRecord(
        internal_name=internal_name(declaration.name, arity),
        arity=arity,
        convention=convention,
        context=context if convention is CallingConvention.TYPE_CONSTRUCTOR else None,
    )

    registry.register(
        dispatch_group_key(declaration.name, context), record, declaration.name
    )

    renamed = copy.copy(node)
    renamed.name = record.internal_name
    return renamed


# ===--- Dispatcher generation ---=== #


def format_forward_call(record: VariantRecord) -> str:
    """Return the expression forwarding a dispatcher's `args` to `record`."""
    arguments = [f"{DISPATCH_ARGS}[{i}]" for i in range(record.arity)]

    if record.convention is CallingConvention.INSTANCE_METHOD:
        receiver = arguments.pop(0)
        return f"{receiver}.{record.internal_name}({', '.join(arguments)})"
    if record.convention is CallingConvention.TYPE_CONSTRUCTOR:
        return f"{record.context}.{record.internal_name}({', '.join(arguments)})"
    return f"{record.internal_name}({', '.join(arguments)})"


def format_arities(records: tuple[VariantRecord, ...]) -> str:
    arities = [str(record.arity) for record in records]
    if len(arities) == 1:
        return arities[0]
    return f"{', '.join(arities[:-1])} or {arities[-1]}"


def format_dispatcher(key: str, records: tuple[VariantRecord, ...]) -> list[str]:
    """Return source lines for the dispatcher of one group.

    Output format (free function `add` at arities 1 and 2):
        def add(*args):
            \"\"\"Dispatch add to its 1 or 2 argument overload.\"\"\"
            if len(args) == 1:
                return add_1(args[0])
            if len(args) == 2:
                return add_2(args[0], args[1])
            raise TypeError(...)

    Arms are emitted in ascending arity order. Arities are unique within a
    group, so the arms never overlap.
    """
    if not records:
        raise ValueError(f"Dispatch group {key} has no variants")

    accepted = format_arities(records)
    lines = [
        f"def {key}(*{DISPATCH_ARGS}):",
        f'    """Dispatch {key} to its {accepted} argument overload."""',
    ]
    for record in records:
        lines.append(f"    if len({DISPATCH_ARGS}) == {record.arity}:")
        lines.append(f"        return {format_forward_call(record)}")
    lines.append(
        f"    raise TypeError(f'{key}() takes {accepted} positional arguments "
        f"but {{len({DISPATCH_ARGS})}} were given')"
    )
    return lines


def generate_dispatchers(registry: OverloadRegistry) -> tuple[list[str], tuple[str, ...]]:
    """Drain `registry` and return (source lines, emitted group keys).

    An empty registry yields no lines. The registry is empty afterwards
    in every case.
    """
    lines: list[str] = []
    groups = registry.drain()
    for key, records in groups.items():
        if lines:
            lines.append("")
        lines.extend(format_dispatcher(key, records))
    return lines, tuple(groups)


# ===--- Source transformation ---=== #


class OverloadTransformer(ast.NodeTransformer):
    """Walk a module in source order, registering and emitting overloads."""

    def __init__(
        self,
        registry: OverloadRegistry,
        decorator: str = DEFAULT_DECORATOR,
        trigger: str = DEFAULT_TRIGGER,
    ) -> None:
        self.registry = registry
        self.decorator = decorator
        self.trigger = trigger
        self.emitted_groups: list[str] = []
        # keys registered here since the last trigger, in first-seen order
        self.pending_groups: dict[str, None] = {}
        self.variant_count = 0

    def _is_marker(self, node: ast.expr) -> bool:
        if isinstance(node, ast.Call):
            node = node.func
        if isinstance(node, ast.Name):
            return node.id == self.decorator
        if isinstance(node, ast.Attribute):
            if isinstance(node.value, ast.Name) and node.value.id in TYPING_MODULES:
                return False
            return node.attr == self.decorator
        return False

    def _marker_context(self, marker: ast.expr) -> str | None:
        if not isinstance(marker, ast.Call):
            return None
        if marker.keywords or len(marker.args) > 1:
            raise MalformedContextError(ast.unparse(marker))
        if not marker.args:
            return None
        argument = marker.args[0]
        if isinstance(argument, ast.Name):
            return argument.id
        if isinstance(argument, ast.Constant) and isinstance(argument.value, str):
            return validate_context(argument.value)
        raise MalformedContextError(ast.unparse(argument))

    def _visit_function(self, node: FunctionNode) -> FunctionNode:
        self.generic_visit(node)
        markers = [d for d in node.decorator_list if self._is_marker(d)]
        if not markers:
            return node

        context = self._marker_context(markers[0])
        node.decorator_list = [
            d for d in node.decorator_list if not self._is_marker(d)
        ]
        renamed = register_declaration(self.registry, node, context)
        self.pending_groups[dispatch_group_key(node.name, context)] = None
        self.variant_count += 1
        return renamed

    def generic_visit(self, node: ast.AST) -> ast.AST:
        node = super().generic_visit(node)
        # a trigger that emitted nothing may have been a block's only statement
        body = getattr(node, "body", None)
        if isinstance(body, list) and not body and not isinstance(node, ast.Module):
            node.body = [ast.copy_location(ast.Pass(), node)]
        return node

    def visit_FunctionDef(self, node: ast.FunctionDef) -> ast.FunctionDef:
        return self._visit_function(node)

    def visit_AsyncFunctionDef(self, node: ast.AsyncFunctionDef) -> ast.AsyncFunctionDef:
        return self._visit_function(node)

    def _is_trigger(self, node: ast.Expr) -> bool:
        call = node.value
        return (
            isinstance(call, ast.Call)
            and isinstance(call.func, ast.Name)
            and call.func.id == self.trigger
            and not call.args
            and not call.keywords
        )

    def visit_Expr(self, node: ast.Expr) -> ast.AST | list[ast.stmt]:
        if not self._is_trigger(node):
            return self.generic_visit(node)

        lines, keys = generate_dispatchers(self.registry)
        self.emitted_groups.extend(keys)
        self.pending_groups.clear()
        if not lines:
            return []
        generated = ast.parse("\n".join(lines)).body
        for statement in generated:
            ast.copy_location(statement, node)
        return generated


@dataclass(frozen=True)
class TransformResult:
    """Outcome of one module transformation.

    Attributes:
        source: Rewritten module source.
        emitted_groups: Dispatcher names in emission order.
        variant_count: Tagged declarations registered from this module.
        pending_groups: Groups this module registered after its last
            trigger. They stay in the registry for the caller's next
            batch. Groups left there by earlier modules are not listed.
    """

    source: str
    emitted_groups: tuple[str, ...]
    variant_count: int
    pending_groups: tuple[str, ...] = field(default_factory=tuple)


def transform_module(
    tree: ast.Module,
    registry: OverloadRegistry,
    decorator: str = DEFAULT_DECORATOR,
    trigger: str = DEFAULT_TRIGGER,
) -> tuple[ast.Module, OverloadTransformer]:
    transformer = OverloadTransformer(registry, decorator, trigger)
    tree = transformer.visit(tree)
    ast.fix_missing_locations(tree)
    return tree, transformer


def transform_source(
    source: str,
    *,
    registry: OverloadRegistry | None = None,
    filename: str = "<unknown>",
    decorator: str = DEFAULT_DECORATOR,
    trigger: str = DEFAULT_TRIGGER,
) -> TransformResult:
    """Parse, rewrite and unparse one module.

    A fresh registry is used unless one is passed in. Passing a shared
    registry lets several modules register into one batch that a later
    trigger drains.

    Raises:
        SyntaxError: If `source` is not valid Python.
        OverloadError: On the first invalid tagged declaration.
    """
    if registry is None:
        registry = OverloadRegistry()

    tree = ast.parse(source, filename=filename)
    tree, transformer = transform_module(tree, registry, decorator, trigger)
    return TransformResult(
        source=ast.unparse(tree) + "\n",
        emitted_groups=tuple(transformer.emitted_groups),
        variant_count=transformer.variant_count,
        pending_groups=tuple(transformer.pending_groups),
    )


# ===--- Writer ---=== #

_HEADER_BORDER: str = "# x-------------------------------------------x #"


def format_file_header(source_label: str) -> list[str]:
    """Return the comment block placed at the top of a generated module.

    Output format:
        # x-------------------------------------------x #
        # | Generated by overgen
        # | Source: shapes.py
        # | Do not edit: regenerate from the source instead
        # x-------------------------------------------x #
    """
    if not source_label:
        raise ValueError("source_label must not be empty")

    return [
        _HEADER_BORDER,
        "# | Generated by overgen",
        f"# | Source: {source_label}",
        "# | Do not edit: regenerate from the source instead",
        _HEADER_BORDER,
    ]


def assemble_output(result: TransformResult, source_label: str | None) -> str:
    if source_label is None:
        return result.source
    header = "\n".join(format_file_header(source_label))
    return f"{header}\n\n{result.source}"


def write_output(path: Path, text: str) -> int:
    """Write `text` to `path`, creating parent directories. Returns line count."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return text.count("\n")


def transform_file(
    config: GenerateConfig, registry: OverloadRegistry | None = None
) -> tuple[TransformResult, str]:
    source = config.source.read_text(encoding="utf-8")
    result = transform_source(
        source,
        registry=registry,
        filename=str(config.source),
        decorator=config.decorator,
        trigger=config.trigger,
    )
    label = config.source.name if config.header else None
    return result, assemble_output(result, label)


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class TransformSummary:
    source_label: str
    output_label: str
    dispatchers: tuple[str, ...]
    variant_count: int
    pending_groups: tuple[str, ...]
    line_count: int


def build_transform_summary(
    config: GenerateConfig, result: TransformResult, line_count: int
) -> TransformSummary:
    return TransformSummary(
        source_label=str(config.source),
        output_label="<stdout>" if config.output is None else str(config.output),
        dispatchers=result.emitted_groups,
        variant_count=result.variant_count,
        pending_groups=result.pending_groups,
        line_count=line_count,
    )


def format_transform_summary(summary: TransformSummary) -> str:
    """Render a TransformSummary for the console, with one trailing newline."""
    lines: list[str] = [
        "Overload dispatchers generated:",
        "",
        f"  Source:      {summary.source_label}",
        f"  Output:      {summary.output_label} ({summary.line_count:,} lines)",
        f"  Variants:    {summary.variant_count}",
        f"  Dispatchers: {len(summary.dispatchers)}",
    ]
    for name in summary.dispatchers:
        lines.append(f"    {name}")

    if summary.pending_groups:
        lines.append("")
        lines.append(
            f"  Warning: {len(summary.pending_groups)} group(s) registered after "
            "the last trigger were not emitted:"
        )
        for name in summary.pending_groups:
            lines.append(f"    {name}")

    lines.append("")
    return "\n".join(lines)


def print_transform_summary(summary: TransformSummary) -> None:
    print(format_transform_summary(summary), end="")


# ===--- Main generation ---=== #


def run_generate(config: GenerateConfig) -> TransformResult:
    result, text = transform_file(config)

    if config.output is None:
        print(text, end="")
        return result

    line_count = write_output(config.output, text)
    print_transform_summary(build_transform_summary(config, result, line_count))
    return result


def main(argv: list[str] | None = None):
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    try:
        run_generate(config)
    except OverloadError as err:
        print(f"Overload error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except (OSError, SyntaxError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
