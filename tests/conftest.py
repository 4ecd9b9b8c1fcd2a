import argparse
import json
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import headers_gen  # noqa: E402


@pytest.fixture
def make_document() -> Callable[[dict], headers_gen.SchemaDocument]:
    def _make_document(raw: dict) -> headers_gen.SchemaDocument:
        return headers_gen.parse_schema(json.dumps(raw))

    return _make_document


@pytest.fixture
def make_registry(
    make_document: Callable[[dict], headers_gen.SchemaDocument],
) -> Callable[..., tuple[headers_gen.SchemaDocument, headers_gen.TypeRegistry]]:
    def _make_registry(
        raw: dict, namespace: str = "WGPU"
    ) -> tuple[headers_gen.SchemaDocument, headers_gen.TypeRegistry]:
        document = make_document(raw)
        return document, headers_gen.build_registry(document, namespace)

    return _make_registry


@pytest.fixture
def render() -> Callable[..., str]:
    def _render(raw: dict, exclude: frozenset[str] = frozenset()) -> str:
        document = headers_gen.parse_schema(json.dumps(raw))
        registry = headers_gen.build_registry(document, "WGPU")
        return headers_gen.generate_header(
            document, registry, exclude, "WGPU_H_", "dawn.json"
        )

    return _render


@pytest.fixture
def write_schema(tmp_path: Path) -> Callable[..., Path]:
    def _write_schema(raw: dict | str, name: str = "dawn.json") -> Path:
        path = tmp_path / name
        text = raw if isinstance(raw, str) else json.dumps(raw, indent=2)
        path.write_text(text, encoding="utf-8")
        return path

    return _write_schema


@pytest.fixture
def make_args(tmp_path: Path) -> Callable[..., argparse.Namespace]:
    schema = tmp_path / "dawn.json"
    schema.write_text("{}\n", encoding="utf-8")

    def _make_args(**overrides: object) -> argparse.Namespace:
        base_args: dict[str, object] = {
            "schema": schema,
            "exclude_tags": None,
            "namespace": "WGPU",
            "output": None,
        }
        base_args.update(overrides)
        return argparse.Namespace(**base_args)

    return _make_args
