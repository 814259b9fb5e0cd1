import re
import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
if str(GENERATOR_DIR) not in sys.path:
    sys.path.insert(0, str(GENERATOR_DIR))

import derive_gen  # noqa: E402


@pytest.fixture
def make_record() -> Callable[..., derive_gen.Shape]:
    def _make_record(
        *names: str, skip: dict[str, frozenset[str]] | None = None
    ) -> derive_gen.Shape:
        skip = skip or {}
        return derive_gen.Shape(
            "record",
            tuple(
                derive_gen.Field(name, "T", skip.get(name, frozenset()))
                for name in names
            ),
        )

    return _make_record


@pytest.fixture
def make_tuple() -> Callable[..., derive_gen.Shape]:
    def _make_tuple(
        count: int, skip: dict[int, frozenset[str]] | None = None
    ) -> derive_gen.Shape:
        skip = skip or {}
        return derive_gen.Shape(
            "tuple",
            tuple(
                derive_gen.Field(str(position), "T", skip.get(position, frozenset()))
                for position in range(count)
            ),
        )

    return _make_tuple


@pytest.fixture
def make_enum() -> Callable[..., derive_gen.EnumShape]:
    def _make_enum(
        *variants: tuple[str, derive_gen.Shape], attrs: tuple[str, ...] = ()
    ) -> derive_gen.EnumShape:
        return derive_gen.EnumShape(
            variants=tuple(
                derive_gen.Variant(name, index, shape)
                for index, (name, shape) in enumerate(variants)
            ),
            attrs=attrs,
        )

    return _make_enum


@pytest.fixture
def make_schema(make_record) -> Callable[..., derive_gen.TypeSchema]:
    def _make_schema(
        *,
        name: str = "Test",
        generics: tuple[str, ...] = ("T",),
        where_clause: tuple[str, ...] = (),
        shape: object = None,
        source: str | None = None,
    ) -> derive_gen.TypeSchema:
        return derive_gen.TypeSchema(
            name=name,
            generics=tuple(derive_gen.GenericParam(param) for param in generics),
            where_clause=where_clause,
            shape=make_record("a") if shape is None else shape,
            source=source,
        )

    return _make_schema


@pytest.fixture
def bound_aliases() -> Callable[..., list[str]]:
    """Return the field aliases bound by the match patterns of a method body."""
    alias_re = re.compile(
        rf"(?:{re.escape(derive_gen.SELF_PREFIX)}|{re.escape(derive_gen.OTHER_PREFIX)})\w+"
    )

    def _bound_aliases(body: tuple[str, ...] | list[str], item: str = "Test") -> list[str]:
        aliases: list[str] = []
        for line in body:
            pattern, separator, _expr = line.partition(" => ")
            if separator and item in pattern:
                aliases.extend(alias_re.findall(pattern))
        return aliases

    return _bound_aliases


@pytest.fixture
def write_schema(tmp_path: Path) -> Callable[[str], Path]:
    def _write_schema(xml_text: str, filename: str = "item.xml") -> Path:
        path = tmp_path / filename
        path.write_text(xml_text, encoding="utf-8")
        return path

    return _write_schema


@pytest.fixture
def record_schema_xml() -> str:
    return (
        '<item name="Test" kind="struct">\n'
        '  <generic name="T"/>\n'
        '  <field name="a" type="T"/>\n'
        "  <source>struct Test&lt;T&gt; { a: T }</source>\n"
        "</item>\n"
    )
