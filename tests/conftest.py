import ast
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import overgen  # noqa: E402


@pytest.fixture
def registry() -> overgen.OverloadRegistry:
    return overgen.OverloadRegistry()


@pytest.fixture
def make_function() -> Callable[[str], overgen.FunctionNode]:
    def _make_function(source: str) -> overgen.FunctionNode:
        node = ast.parse(source).body[0]
        assert isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef))
        return node

    return _make_function


@pytest.fixture
def make_record() -> Callable[..., overgen.VariantRecord]:
    def _make_record(
        *,
        name: str = "add",
        arity: int = 1,
        convention: overgen.CallingConvention = overgen.CallingConvention.FREE_FUNCTION,
        context: str | None = None,
    ) -> overgen.VariantRecord:
        return overgen.VariantRecord(
            internal_name=overgen.internal_name(name, arity),
            arity=arity,
            convention=convention,
            context=context,
        )

    return _make_record


@pytest.fixture
def run_generated() -> Callable[..., dict[str, object]]:
    def _run_generated(
        source: str, registry: overgen.OverloadRegistry | None = None
    ) -> dict[str, object]:
        result = overgen.transform_source(source, registry=registry)
        namespace: dict[str, object] = {"__name__": "generated"}
        exec(compile(result.source, "<generated>", "exec"), namespace)
        return namespace

    return _run_generated


@pytest.fixture
def existing_source(tmp_path: Path) -> Path:
    source = tmp_path / "shapes.py"
    source.write_text(
        "@overload\n"
        "def add(x):\n"
        "    return 10 + x\n"
        "\n"
        "@overload\n"
        "def add(x, y):\n"
        "    return x + y\n"
        "\n"
        "dispatchers()\n",
        encoding="utf-8",
    )
    return source
