"""Structural trait implementation generator for Rust items.

Generates `impl` blocks for Clone, Copy, Debug, Eq, Hash, Ord, PartialEq and
PartialOrd from a parsed item schema and a `derive_where`-style directive.
Generic parameters are bound only to the traits the directive names for
them, instead of the blanket bounds a plain `#[derive]` would add.

Usage:
    python derive_gen.py --schema item.xml --derive "T; Clone, Debug"
"""

import argparse
import re
import textwrap
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple


# ===--- CLI config contracts ---=== #


@dataclass(frozen=True)
class GenerateConfig:
    schema: Path
    directive: str
    output: Path | None


@dataclass(frozen=True)
class DiscoveryConfig:
    command: str


VALID_ERROR_CODES = {
    "MISSING_SCHEMA",
    "MISSING_DIRECTIVE",
    "CONFLICT_GENERATE_DISCOVERY",
    "PATH_NOT_FOUND",
}


class ConfigError(Exception):
    def __init__(self, code: str, message: str, suggestion: str | None = None):
        if code not in VALID_ERROR_CODES:
            raise ValueError(f"Unknown config error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.suggestion = suggestion


def validate_path_exists(
    path: Path | None, flag: str, suggestion: str | None = None
) -> Path:
    if path is None:
        raise ConfigError(
            "PATH_NOT_FOUND",
            f"{flag} is required: no path provided.",
            suggestion or f"Pass the path explicitly: {flag} /path/to/resource",
        )
    if path.exists():
        return path
    raise ConfigError(
        "PATH_NOT_FOUND",
        f"Path for {flag} does not exist: {path}",
        suggestion or "Provide an existing path for this flag.",
    )


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Generate structural trait implementations for Rust items"
    )

    parser.add_argument("--schema", type=Path, default=None)
    parser.add_argument("--derive", type=str, default=None)
    parser.add_argument("--output", type=Path, default=None)
    parser.add_argument("--list-capabilities", action="store_true", default=False)

    return parser


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = build_argument_parser()
    return parser.parse_args(argv)


def validate_config(args: argparse.Namespace) -> GenerateConfig | DiscoveryConfig:
    has_generate_input = bool(args.schema or args.derive or args.output)

    if has_generate_input and args.list_capabilities:
        raise ConfigError(
            "CONFLICT_GENERATE_DISCOVERY",
            "Generate flags cannot be combined with --list-capabilities.",
            "Choose either generate mode or --list-capabilities.",
        )

    if args.list_capabilities:
        return DiscoveryConfig(command="list-capabilities")

    if args.schema is None:
        raise ConfigError(
            "MISSING_SCHEMA",
            "Generate mode requires --schema.",
            "Pass the item schema: --schema /path/to/item.xml",
        )

    if args.derive is None or not args.derive.strip():
        raise ConfigError(
            "MISSING_DIRECTIVE",
            "Generate mode requires a non-empty --derive directive.",
            'Pass capabilities, optionally after bounds: --derive "T; Clone, Debug"',
        )

    schema = validate_path_exists(args.schema, "--schema")
    return GenerateConfig(schema=schema, directive=args.derive, output=args.output)


def build_config(argv: list[str] | None = None) -> GenerateConfig | DiscoveryConfig:
    return validate_config(parse_args(argv))


# ===--- Diagnostics ---=== #


class Span(NamedTuple):
    start: int
    end: int

    def __str__(self) -> str:
        return f"{self.start}..{self.end}"


VALID_DERIVE_CODES = {
    "SYNTAX_ERROR",
    "UNSUPPORTED_CAPABILITY",
    "INVALID_DIRECTIVE",
    "UNSUPPORTED_SHAPE",
}


class DeriveError(Exception):
    """Structured generation failure.

    Raised during directive parsing or schema validation, always before any
    implementation body is built. `span` points into the directive text when
    the failure comes from it and is None for schema-level failures.
    """

    def __init__(
        self,
        code: str,
        message: str,
        span: Span | None = None,
        suggestion: str | None = None,
    ):
        if code not in VALID_DERIVE_CODES:
            raise ValueError(f"Unknown derive error code: {code}")
        super().__init__(message)
        self.code = code
        self.message = message
        self.span = span
        self.suggestion = suggestion


class SchemaError(ValueError):
    """Raised when a schema document does not describe a valid item."""


# ===--- Capabilities ---=== #


class Capability(NamedTuple):
    name: str
    path: str
    method: str | None
    behavior: str

    @property
    def has_body(self) -> bool:
        return self.method is not None


CAPABILITIES: dict[str, Capability] = {
    "Clone": Capability("Clone", "::core::clone::Clone", "clone", "duplicate by value"),
    "Copy": Capability("Copy", "::core::marker::Copy", None, "zero-cost duplicate marker"),
    "Debug": Capability("Debug", "::core::fmt::Debug", "fmt", "debug-style textual dump"),
    "Eq": Capability("Eq", "::core::cmp::Eq", None, "total equality marker"),
    "Hash": Capability("Hash", "::core::hash::Hash", "hash", "hash contribution"),
    "Ord": Capability("Ord", "::core::cmp::Ord", "cmp", "total order"),
    "PartialEq": Capability(
        "PartialEq", "::core::cmp::PartialEq", "eq", "structural equality"
    ),
    "PartialOrd": Capability(
        "PartialOrd", "::core::cmp::PartialOrd", "partial_cmp", "partial order"
    ),
}

# Capabilities whose generated body may leave individual fields out.
SKIPPABLE_CAPABILITIES = frozenset({"Debug", "Hash", "PartialEq", "PartialOrd", "Ord"})

# Equal values must hash and order alike, so these are skipped together or not at all.
EQ_HASH_ORD_GROUP = frozenset({"PartialEq", "Hash", "PartialOrd", "Ord"})

_SIGNATURES: dict[str, str] = {
    "Clone": "fn clone(&self) -> Self",
    "Debug": "fn fmt(&self, __f: &mut ::core::fmt::Formatter<'_>) -> ::core::fmt::Result",
    "Hash": "fn hash<__H: ::core::hash::Hasher>(&self, __state: &mut __H)",
    "Ord": "fn cmp(&self, __other: &Self) -> ::core::cmp::Ordering",
    "PartialEq": "fn eq(&self, __other: &Self) -> bool",
    "PartialOrd": (
        "fn partial_cmp(&self, __other: &Self) "
        "-> ::core::option::Option<::core::cmp::Ordering>"
    ),
}

_UNREACHABLE_ARM = (
    '_ => ::core::unreachable!("comparing variants yielded unexpected results"),'
)


# ===--- Item schema ---=== #

GENERIC_KINDS = ("type", "lifetime", "const")
SHAPE_KINDS = ("record", "tuple", "unit")


@dataclass(frozen=True)
class GenericParam:
    """One generic parameter as declared on the item.

    Attributes:
        name: Parameter name. Lifetimes keep their leading apostrophe.
        kind: One of GENERIC_KINDS.
        bounds: Inline bounds, e.g. "Default + Send", or None.
        const_type: Value type of a const parameter, e.g. "usize".
        default: Declared default. Never repeated on the impl header.
    """

    name: str
    kind: str = "type"
    bounds: str | None = None
    const_type: str | None = None
    default: str | None = None

    @property
    def impl_text(self) -> str:
        if self.kind == "const":
            return f"const {self.name}: {self.const_type}"
        if self.bounds:
            return f"{self.name}: {self.bounds}"
        return self.name


@dataclass(frozen=True)
class Field:
    key: str
    ty: str = ""
    skip: frozenset[str] = frozenset()


@dataclass(frozen=True)
class Shape:
    kind: str
    fields: tuple[Field, ...] = ()


@dataclass(frozen=True)
class Variant:
    name: str
    index: int
    shape: Shape


@dataclass(frozen=True)
class EnumShape:
    variants: tuple[Variant, ...]
    attrs: tuple[str, ...] = ()


@dataclass(frozen=True)
class UnionShape:
    fields: tuple[Field, ...] = ()


@dataclass(frozen=True)
class TypeSchema:
    """Parsed item handed over by the syntax front end.

    Attributes:
        name: Item identifier.
        generics: Declared generic parameters, in declaration order.
        where_clause: Predicates of the item's own where clause.
        shape: Shape, EnumShape or UnionShape.
        source: Original item text, echoed ahead of the generated blocks.
    """

    name: str
    generics: tuple[GenericParam, ...] = ()
    where_clause: tuple[str, ...] = ()
    shape: Shape | EnumShape | UnionShape = Shape("unit")
    source: str | None = None

    @property
    def is_enum(self) -> bool:
        return isinstance(self.shape, EnumShape)

    def impl_generics(self) -> str:
        if not self.generics:
            return ""
        return "<" + ", ".join(param.impl_text for param in self.generics) + ">"

    def type_generics(self) -> str:
        if not self.generics:
            return ""
        return "<" + ", ".join(param.name for param in self.generics) + ">"


def describe_item(schema: TypeSchema) -> str:
    """Return a one-line description, e.g. "Test<T> (enum, 2 variants)"."""
    label = f"{schema.name}{schema.type_generics()}"
    shape = schema.shape
    if isinstance(shape, EnumShape):
        return f"{label} (enum, {_plural(len(shape.variants), 'variant')})"
    if isinstance(shape, UnionShape):
        return f"{label} (union, {_plural(len(shape.fields), 'field')})"
    if shape.kind == "unit":
        return f"{label} (unit)"
    return f"{label} ({shape.kind}, {_plural(len(shape.fields), 'field')})"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


# ===--- Representation resolver ---=== #

REPRESENTATIONS = (
    "u8",
    "u16",
    "u32",
    "u64",
    "u128",
    "usize",
    "i8",
    "i16",
    "i32",
    "i64",
    "i128",
    "isize",
)
DISCRIMINANT_KINDS = ("single", "unit_default", "unit_repr", "repr", "unknown")

_ATTR_PATH_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)")
_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass(frozen=True)
class Discriminant:
    """How an enum's variant selector is realised.

    `representation` is set only for the unit_repr and repr kinds.
    """

    kind: str
    representation: str | None = None

    def __str__(self) -> str:
        if self.representation is None:
            return self.kind
        return f"{self.kind}({self.representation})"


def parse_layout_directive(attr: str) -> tuple[str, ...] | None:
    """Return the arguments of a `repr(...)` attribute.

    Accepts the attribute with or without its `#[...]` wrapper. Attributes
    with any other path return None.

    Raises:
        DeriveError: INVALID_DIRECTIVE when the attribute is `repr` but not
            in list form, or an argument is not a plain identifier.
    """
    text = attr.strip()
    if text.startswith("#[") and text.endswith("]"):
        text = text[2:-1].strip()

    match = _ATTR_PATH_RE.match(text)
    if match is None or match.group(1) != "repr":
        return None

    rest = text[match.end() :].strip()
    if not (rest.startswith("(") and rest.endswith(")")):
        raise DeriveError(
            "INVALID_DIRECTIVE",
            f"`repr` attribute must be a parenthesized list, got `{attr.strip()}`",
            suggestion="Write the representation as a list, e.g. repr(u8) or repr(C).",
        )

    inner = rest[1:-1]
    if not inner.strip():
        return ()

    args = [arg.strip() for arg in inner.split(",")]
    if args[-1] == "":
        args.pop()
    for arg in args:
        if not _IDENT_RE.match(arg):
            raise DeriveError(
                "INVALID_DIRECTIVE",
                f"Unsupported `repr` argument `{arg}` in `{attr.strip()}`",
            )
    return tuple(args)


def resolve_discriminant(
    attrs: tuple[str, ...], variants: tuple[Variant, ...]
) -> Discriminant:
    """Resolve the discriminant kind of an enum from its layout directives.

    A single variant short-circuits every other check. Otherwise the first
    integer width found, scanning attributes and their arguments in
    declaration order, wins; `C` marks a cross-language layout.

    Args:
        attrs: Raw outer attributes of the enum.
        variants: Variants in declaration order.

    Returns:
        The resolved Discriminant.

    Raises:
        DeriveError: INVALID_DIRECTIVE from parse_layout_directive.
    """
    if len(variants) == 1:
        return Discriminant("single")

    representation = None
    is_c = False

    for attr in attrs:
        args = parse_layout_directive(attr)
        if args is None:
            continue
        for arg in args:
            if arg == "C":
                is_c = True
            elif arg in REPRESENTATIONS and representation is None:
                representation = arg

    # `A {}` and `A()` carry no data and count as unit here.
    is_unit = all(not variant.shape.fields for variant in variants)

    if representation is not None:
        kind = "unit_repr" if is_unit else "repr"
        return Discriminant(kind, representation)
    if is_unit and not is_c:
        return Discriminant("unit_default")
    return Discriminant("unknown")


# ===--- Shape classification ---=== #


@dataclass(frozen=True)
class Arm:
    """One dispatch arm: the whole item, or one variant of an enum.

    Attributes:
        label: Name shown by Debug (variant name or item name).
        pattern: Path used in patterns and constructors, e.g. "Test::A".
        shape: Fields of this arm.
        index: Variant declaration index, None for non-enum items.
    """

    label: str
    pattern: str
    shape: Shape
    index: int | None = None


class FieldBinding(NamedTuple):
    key: str
    alias: str
    other_alias: str


# Neither prefix starts the other, and neither can spell a method-local name
# (__f, __state, __other, __builder, __cmp, __H).
SELF_PREFIX = "__self_field_"
OTHER_PREFIX = "__other_field_"


def validate_schema(schema: TypeSchema) -> None:
    """Reject items this generator cannot implement traits for.

    Raises:
        DeriveError: UNSUPPORTED_SHAPE for unions and for generic unit
            records; INVALID_DIRECTIVE for field skips that name an unknown
            capability or one whose body cannot leave fields out, and for
            skips that split PartialEq, Hash, PartialOrd and Ord.
    """
    shape = schema.shape
    if isinstance(shape, UnionShape):
        raise DeriveError(
            "UNSUPPORTED_SHAPE",
            f"Unions aren't supported: `{schema.name}` has no field discrimination.",
        )

    if isinstance(shape, EnumShape):
        shapes = [variant.shape for variant in shape.variants]
    else:
        if shape.kind == "unit" and schema.generics:
            raise DeriveError(
                "UNSUPPORTED_SHAPE",
                f"Unit struct `{schema.name}` cannot carry generic parameters.",
            )
        shapes = [shape]

    for item_shape in shapes:
        for field in item_shape.fields:
            for name in sorted(field.skip):
                if name not in CAPABILITIES:
                    raise DeriveError(
                        "INVALID_DIRECTIVE",
                        f"Field `{field.key}` of `{schema.name}` skips unknown "
                        f"capability `{name}`.",
                    )
                if name not in SKIPPABLE_CAPABILITIES:
                    raise DeriveError(
                        "INVALID_DIRECTIVE",
                        f"Field `{field.key}` of `{schema.name}` cannot be skipped "
                        f"for `{name}`.",
                        suggestion="Only Debug, Hash, PartialEq, PartialOrd and Ord "
                        "can skip fields.",
                    )
            grouped = field.skip & EQ_HASH_ORD_GROUP
            if grouped and grouped != EQ_HASH_ORD_GROUP:
                missing = ", ".join(sorted(EQ_HASH_ORD_GROUP - grouped))
                raise DeriveError(
                    "INVALID_DIRECTIVE",
                    f"Field `{field.key}` of `{schema.name}` is skipped for "
                    f"{', '.join(sorted(grouped))} but not for {missing}.",
                    suggestion="Skip PartialEq, Hash, PartialOrd and Ord together.",
                )


def classify_shape(schema: TypeSchema) -> tuple[Arm, ...]:
    shape = schema.shape
    if isinstance(shape, EnumShape):
        return tuple(
            Arm(
                label=variant.name,
                pattern=f"{schema.name}::{variant.name}",
                shape=variant.shape,
                index=variant.index,
            )
            for variant in shape.variants
        )
    return (Arm(label=schema.name, pattern=schema.name, shape=shape),)


def _alias_stem(key: str) -> str:
    return key[2:] if key.startswith("r#") else key


def field_bindings(shape: Shape, capability: Capability) -> tuple[FieldBinding, ...]:
    return tuple(
        FieldBinding(
            key=field.key,
            alias=f"{SELF_PREFIX}{_alias_stem(field.key)}",
            other_alias=f"{OTHER_PREFIX}{_alias_stem(field.key)}",
        )
        for field in shape.fields
        if capability.name not in field.skip
    )


def destructure(arm: Arm, capability: Capability, prefix: str) -> str:
    """Return the pattern binding every participating field of `arm`.

    Fields skipped for `capability` are matched with `..` (records) or `_`
    (tuples) so they are never bound.
    """
    shape = arm.shape
    if shape.kind == "unit":
        return arm.pattern

    if shape.kind == "record":
        parts = []
        skipped = False
        for field in shape.fields:
            if capability.name in field.skip:
                skipped = True
                continue
            parts.append(f"{field.key}: {prefix}{_alias_stem(field.key)}")
        if skipped:
            parts.append("..")
        if not parts:
            return f"{arm.pattern} {{}}"
        return f"{arm.pattern} {{ {', '.join(parts)} }}"

    parts = [
        "_" if capability.name in field.skip else f"{prefix}{field.key}"
        for field in shape.fields
    ]
    return f"{arm.pattern}({', '.join(parts)})"


def skip_pattern(arm: Arm) -> str:
    if arm.shape.kind == "record":
        return f"{arm.pattern} {{ .. }}"
    if arm.shape.kind == "tuple":
        return f"{arm.pattern}(..)"
    return arm.pattern


# ===--- Body generation ---=== #


def _indent(lines: list[str], levels: int = 1) -> list[str]:
    pad = "    " * levels
    return [f"{pad}{line}" if line else line for line in lines]


def _arm(pattern: str, expr: list[str]) -> list[str]:
    if len(expr) == 1:
        return [f"{pattern} => {expr[0]},"]
    return [f"{pattern} => {expr[0]}", *expr[1:-1], f"{expr[-1]},"]


def _match_block(scrutinee: str, arms: list[str]) -> list[str]:
    if not arms:
        return [f"match {scrutinee} {{}}"]
    return [f"match {scrutinee} {{", *_indent(arms), "}"]


def _clone_record(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    values = [
        f"{binding.key}: {capability.path}::clone({binding.alias})"
        for binding in field_bindings(arm.shape, capability)
    ]
    rebuilt = f"{arm.pattern} {{ {', '.join(values)} }}" if values else f"{arm.pattern} {{}}"
    return _arm(destructure(arm, capability, SELF_PREFIX), [rebuilt])


def _clone_tuple(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    values = [
        f"{capability.path}::clone({binding.alias})"
        for binding in field_bindings(arm.shape, capability)
    ]
    rebuilt = f"{arm.pattern}({', '.join(values)})"
    return _arm(destructure(arm, capability, SELF_PREFIX), [rebuilt])


def _clone_unit(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    return _arm(arm.pattern, [arm.pattern])


def _debug_record(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    expr = [
        "{",
        f'    let mut __builder = ::core::fmt::Formatter::debug_struct(__f, "{arm.label}");',
    ]
    for binding in field_bindings(arm.shape, capability):
        name = _alias_stem(binding.key)
        expr.append(
            f'    ::core::fmt::DebugStruct::field(&mut __builder, "{name}", {binding.alias});'
        )
    expr.append("    ::core::fmt::DebugStruct::finish(&mut __builder)")
    expr.append("}")
    return _arm(destructure(arm, capability, SELF_PREFIX), expr)


def _debug_tuple(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    expr = [
        "{",
        f'    let mut __builder = ::core::fmt::Formatter::debug_tuple(__f, "{arm.label}");',
    ]
    for binding in field_bindings(arm.shape, capability):
        expr.append(
            f"    ::core::fmt::DebugTuple::field(&mut __builder, {binding.alias});"
        )
    expr.append("    ::core::fmt::DebugTuple::finish(&mut __builder)")
    expr.append("}")
    return _arm(destructure(arm, capability, SELF_PREFIX), expr)


def _debug_unit(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    return _arm(arm.pattern, [f'::core::fmt::Formatter::write_str(__f, "{arm.label}")'])


def _hash_fields(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    bindings = field_bindings(arm.shape, capability)
    pattern = destructure(arm, capability, SELF_PREFIX)
    if not bindings:
        return [f"{pattern} => {{}}"]
    return [
        f"{pattern} => {{",
        *(f"    {capability.path}::hash({binding.alias}, __state);" for binding in bindings),
        "}",
    ]


def _hash_unit(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    return [f"{arm.pattern} => {{}}"]


def _eq_fields(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    pattern = (
        f"({destructure(arm, capability, SELF_PREFIX)}, "
        f"{destructure(arm, capability, OTHER_PREFIX)})"
    )
    comparisons = [
        f"{capability.path}::eq({binding.alias}, {binding.other_alias})"
        for binding in field_bindings(arm.shape, capability)
    ]
    if not comparisons:
        return _arm(pattern, ["true"])
    if len(comparisons) == 1:
        return _arm(pattern, comparisons)
    return [
        f"{pattern} => {{",
        f"    {comparisons[0]}",
        *(f"        && {comparison}" for comparison in comparisons[1:]),
        "}",
    ]


def _eq_unit(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    return _arm(f"({arm.pattern}, {arm.pattern})", ["true"])


def orderings(capability: Capability) -> tuple[str, str, str]:
    """Return the (less, equal, greater) expressions for an ordering capability."""
    values = tuple(
        f"::core::cmp::Ordering::{name}" for name in ("Less", "Equal", "Greater")
    )
    if capability.name == "PartialOrd":
        return tuple(f"::core::option::Option::Some({value})" for value in values)
    if capability.name == "Ord":
        return values
    raise ValueError(f"{capability.name} is not an ordering capability")


def fold_ordering(capability: Capability, bindings: tuple[FieldBinding, ...]) -> list[str]:
    """Build the lexicographic comparison chain over `bindings`.

    Folds from the last field to the first so the outermost match compares
    the first field: each field defers to the rest only when it is equal.
    """
    _less, equal, _greater = orderings(capability)
    expr = [equal]
    for binding in reversed(bindings):
        call = f"{capability.path}::{capability.method}({binding.alias}, {binding.other_alias})"
        expr = [
            f"match {call} {{",
            *_indent(_arm(equal, expr)),
            "    __cmp => __cmp,",
            "}",
        ]
    return expr


def _ord_arm(capability: Capability, arm: Arm, arms: tuple[Arm, ...]) -> list[str]:
    less, _equal, greater = orderings(capability)
    chain = fold_ordering(capability, field_bindings(arm.shape, capability))

    inner = _arm(destructure(arm, capability, OTHER_PREFIX), chain)
    for other in arms:
        if other.index == arm.index:
            continue
        ordering = less if arm.index < other.index else greater
        inner.extend(_arm(skip_pattern(other), [ordering]))

    return _arm(
        destructure(arm, capability, SELF_PREFIX), ["match __other {", *_indent(inner), "}"]
    )


BodyBuilder = Callable[[Capability, Arm, tuple[Arm, ...]], list[str]]

BODY_BUILDERS: dict[tuple[str, str], BodyBuilder] = {
    ("Clone", "record"): _clone_record,
    ("Clone", "tuple"): _clone_tuple,
    ("Clone", "unit"): _clone_unit,
    ("Debug", "record"): _debug_record,
    ("Debug", "tuple"): _debug_tuple,
    ("Debug", "unit"): _debug_unit,
    ("Hash", "record"): _hash_fields,
    ("Hash", "tuple"): _hash_fields,
    ("Hash", "unit"): _hash_unit,
    ("PartialEq", "record"): _eq_fields,
    ("PartialEq", "tuple"): _eq_fields,
    ("PartialEq", "unit"): _eq_unit,
    ("Ord", "record"): _ord_arm,
    ("Ord", "tuple"): _ord_arm,
    ("Ord", "unit"): _ord_arm,
    ("PartialOrd", "record"): _ord_arm,
    ("PartialOrd", "tuple"): _ord_arm,
    ("PartialOrd", "unit"): _ord_arm,
}
"""Match-arm builders indexed by (capability name, shape kind).

Copy and Eq have no entries: they are marker traits without a body."""


def build_match_arms(capability: Capability, arms: tuple[Arm, ...]) -> list[str]:
    lines: list[str] = []
    for arm in arms:
        builder = BODY_BUILDERS[(capability.name, arm.shape.kind)]
        lines.extend(builder(capability, arm, arms))
    return lines


def build_signature(
    capability: Capability, match_arms: list[str], is_enum: bool, has_arms: bool
) -> list[str]:
    """Wrap match arms into the trait method of `capability`.

    Marker capabilities return an empty list. An enum without variants is
    matched through `*self` so the empty match stays exhaustive.

    Args:
        capability: Capability being implemented.
        match_arms: Arms from build_match_arms.
        is_enum: True when the item is an enum.
        has_arms: False only for enums without variants.

    Returns:
        Method source lines, unindented.
    """
    if not capability.has_body:
        return []

    scrutinee = "self" if has_arms else "*self"

    if capability.name == "PartialEq":
        if is_enum:
            body = [
                "if ::core::mem::discriminant(self) == ::core::mem::discriminant(__other) {",
                *_indent(_match_block("(self, __other)", [*match_arms, _UNREACHABLE_ARM])),
                "} else {",
                "    false",
                "}",
            ]
        else:
            body = _match_block("(self, __other)", match_arms)
    elif capability.name == "Hash" and is_enum:
        body = [
            f"{capability.path}::hash(&::core::mem::discriminant(self), __state);",
            "",
            *_match_block(scrutinee, match_arms),
        ]
    else:
        body = _match_block(scrutinee, match_arms)

    return [f"{_SIGNATURES[capability.name]} {{", *_indent(body), "}"]


def generate_body(capability: Capability, arms: tuple[Arm, ...], is_enum: bool) -> tuple[str, ...]:
    if not capability.has_body:
        return ()
    match_arms = build_match_arms(capability, arms)
    return tuple(build_signature(capability, match_arms, is_enum, bool(arms)))


# ===--- Directive parsing ---=== #


class Token(NamedTuple):
    kind: str
    text: str
    span: Span


@dataclass(frozen=True)
class GenericBound:
    """One entry of the directive's bound section.

    Attributes:
        ty: Bounded type text, e.g. "T" or "Vec<T>".
        predicate: Verbatim user where-predicate, or None to bind `ty` to
            the capability currently being implemented.
        span: Location of the entry in the directive.
    """

    ty: str
    predicate: str | None
    span: Span


@dataclass(frozen=True)
class CapabilityRequest:
    bounds: tuple[GenericBound, ...] | None
    capabilities: tuple[Capability, ...]


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    | (?P<lifetime>'[A-Za-z_][A-Za-z0-9_]*)
    | (?P<ident>(?:r\#)?[A-Za-z_][A-Za-z0-9_]*)
    | (?P<literal>[0-9][0-9A-Za-z_]*)
    | (?P<punct>::|->|[,;:<>()\[\]&*=+!?])
    """,
    re.VERBOSE,
)

_OPENERS = {"<": ">", "(": ")", "[": "]"}
_CLOSERS = {">", ")", "]"}
_SUPPORTED_HINT = "Supported capabilities: " + ", ".join(CAPABILITIES) + "."


def tokenize(text: str) -> list[Token]:
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if match is None:
            raise DeriveError(
                "SYNTAX_ERROR",
                f"Unexpected character {text[pos]!r}",
                Span(pos, pos + 1),
            )
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), Span(match.start(), match.end())))
        pos = match.end()
    return tokens


def _end_span(tokens: list[Token], text_len: int) -> Span:
    if tokens:
        end = tokens[-1].span.end
        return Span(end, end)
    return Span(text_len, text_len)


def parse_capability_list(
    tokens: list[Token], text_len: int
) -> tuple[Capability, ...]:
    """Parse a comma-separated capability list spanning all of `tokens`.

    A single trailing comma is accepted. Repeated capabilities keep their
    first position.

    Raises:
        DeriveError: SYNTAX_ERROR for a malformed or empty list,
            UNSUPPORTED_CAPABILITY for an identifier outside CAPABILITIES.
    """
    if not tokens:
        raise DeriveError(
            "SYNTAX_ERROR",
            "Expected at least one capability",
            Span(text_len, text_len),
            _SUPPORTED_HINT,
        )

    capabilities: list[Capability] = []
    pos = 0
    while True:
        token = tokens[pos]
        if token.kind != "ident":
            raise DeriveError(
                "SYNTAX_ERROR",
                f"Expected a capability, found `{token.text}`",
                token.span,
            )
        capability = CAPABILITIES.get(token.text)
        if capability is None:
            raise DeriveError(
                "UNSUPPORTED_CAPABILITY",
                f"{token.text} isn't supported",
                token.span,
                _SUPPORTED_HINT,
            )
        if capability not in capabilities:
            capabilities.append(capability)

        pos += 1
        if pos == len(tokens):
            break
        separator = tokens[pos]
        if separator.text != ",":
            raise DeriveError(
                "SYNTAX_ERROR",
                f"Expected `,`, found `{separator.text}`",
                separator.span,
            )
        pos += 1
        if pos == len(tokens):
            break

    return tuple(capabilities)


def _nesting_depths(tokens: list[Token]) -> list[int]:
    """Return the bracket depth of every token, rejecting unbalanced input."""
    depths: list[int] = []
    stack: list[Token] = []
    for token in tokens:
        if token.kind == "punct" and token.text in _CLOSERS:
            if not stack or _OPENERS[stack[-1].text] != token.text:
                raise DeriveError(
                    "SYNTAX_ERROR", f"Unbalanced `{token.text}`", token.span
                )
            stack.pop()
        depths.append(len(stack))
        if token.kind == "punct" and token.text in _OPENERS:
            stack.append(token)
    if stack:
        raise DeriveError("SYNTAX_ERROR", f"Unclosed `{stack[-1].text}`", stack[-1].span)
    return depths


def _split_top_level(
    tokens: list[Token], depths: list[int], separator: str
) -> list[list[Token]]:
    segments: list[list[Token]] = [[]]
    for token, depth in zip(tokens, depths):
        if depth == 0 and token.kind == "punct" and token.text == separator:
            segments.append([])
        else:
            segments[-1].append(token)
    return segments


def _source_text(text: str, tokens: list[Token]) -> str:
    return text[tokens[0].span.start : tokens[-1].span.end]


def parse_bound(text: str, tokens: list[Token], anchor: Span) -> GenericBound:
    """Parse one bound: a where-predicate `Type: Bounds` or a bare type.

    Args:
        text: Full directive text, used to recover verbatim source.
        tokens: Tokens of this bound only.
        anchor: Span reported when `tokens` is empty.

    Raises:
        DeriveError: SYNTAX_ERROR for empty bounds, lifetime bounds and
            equality predicates.
    """
    if not tokens:
        raise DeriveError("SYNTAX_ERROR", "Expected a generic bound", anchor)

    span = Span(tokens[0].span.start, tokens[-1].span.end)
    depths = _nesting_depths(tokens)
    top_level = [
        (index, token)
        for index, (token, depth) in enumerate(zip(tokens, depths))
        if depth == 0 and token.kind == "punct"
    ]

    for _index, token in top_level:
        if token.text == "=":
            raise DeriveError(
                "SYNTAX_ERROR", "Equality predicates are not supported", span
            )

    colon = next((index for index, token in top_level if token.text == ":"), None)
    if colon is None:
        if len(tokens) == 1 and tokens[0].kind == "lifetime":
            raise DeriveError(
                "SYNTAX_ERROR", "Bounds on lifetimes are not supported", span
            )
        return GenericBound(ty=_source_text(text, tokens), predicate=None, span=span)

    bounded = tokens[:colon]
    if not bounded:
        raise DeriveError("SYNTAX_ERROR", "Expected a type before `:`", tokens[colon].span)
    if colon == len(tokens) - 1:
        raise DeriveError("SYNTAX_ERROR", "Expected bounds after `:`", tokens[colon].span)
    if len(bounded) == 1 and bounded[0].kind == "lifetime":
        raise DeriveError("SYNTAX_ERROR", "Bounds on lifetimes are not supported", span)

    return GenericBound(
        ty=_source_text(text, bounded),
        predicate=_source_text(text, tokens),
        span=span,
    )


def parse_request(text: str) -> CapabilityRequest:
    """Parse a directive into a CapabilityRequest.

    The capability-list-only form is tried first. When it fails and the
    directive holds a `;`, the text is re-read as `bounds ; capabilities`.
    Without a `;` the capability-list error is the one reported.

    Args:
        text: Raw directive, e.g. "T, U: Clone; Clone, Debug".

    Returns:
        The parsed request. `bounds` is None for the list-only form.

    Raises:
        DeriveError: SYNTAX_ERROR or UNSUPPORTED_CAPABILITY, with the span of
            the offending token.
    """
    tokens = tokenize(text)

    list_error = None
    try:
        capabilities = parse_capability_list(tokens, len(text))
    except DeriveError as err:
        list_error = err
    else:
        return CapabilityRequest(bounds=None, capabilities=capabilities)

    if not any(token.kind == "punct" and token.text == ";" for token in tokens):
        raise list_error

    depths = _nesting_depths(tokens)
    semicolon = next(
        (
            index
            for index, (token, depth) in enumerate(zip(tokens, depths))
            if depth == 0 and token.kind == "punct" and token.text == ";"
        ),
        None,
    )
    if semicolon is None:
        raise list_error

    bound_tokens = tokens[:semicolon]
    bounds = tuple(
        parse_bound(text, segment, tokens[semicolon].span)
        for segment in _split_top_level(bound_tokens, depths[:semicolon], ",")
    )

    capability_tokens = tokens[semicolon + 1 :]
    if not capability_tokens:
        raise DeriveError(
            "SYNTAX_ERROR",
            "Expected at least one capability after `;`",
            _end_span(tokens, len(text)),
            _SUPPORTED_HINT,
        )
    capabilities = parse_capability_list(capability_tokens, len(text))
    return CapabilityRequest(bounds=bounds, capabilities=capabilities)


# ===--- Bound synthesis ---=== #


def synthesize_where_clause(
    original: tuple[str, ...],
    bounds: tuple[GenericBound, ...] | None,
    capability: Capability,
) -> tuple[str, ...]:
    """Return the where-clause predicates for one implementation.

    Without a bound section the item's own clause is reused unchanged.
    Otherwise each bound is appended to a copy of it, either verbatim or as
    "<type>: <capability path>".
    """
    if bounds is None:
        return original

    predicates = list(original)
    for bound in bounds:
        if bound.predicate is not None:
            predicates.append(bound.predicate)
        else:
            predicates.append(f"{bound.ty}: {capability.path}")
    return tuple(predicates)


def render_where_clause(predicates: tuple[str, ...]) -> list[str]:
    if not predicates:
        return []
    return ["where", *(f"    {predicate}," for predicate in predicates)]


# ===--- Orchestration ---=== #


@dataclass(frozen=True)
class GeneratedImplementation:
    """One `impl` block.

    Attributes:
        capability: Trait being implemented.
        impl_generics: Generic parameter list of the impl, e.g. "<T: Default>".
        self_type: Implementing type, e.g. "Test<T>".
        where_clause: Predicates attached to this impl only.
        body: Method source lines, empty for marker traits.
    """

    capability: Capability
    impl_generics: str
    self_type: str
    where_clause: tuple[str, ...]
    body: tuple[str, ...]


@dataclass(frozen=True)
class Derivation:
    item: TypeSchema
    discriminant: Discriminant | None
    implementations: tuple[GeneratedImplementation, ...]


def generate_implementation(
    schema: TypeSchema,
    arms: tuple[Arm, ...],
    capability: Capability,
    bounds: tuple[GenericBound, ...] | None,
) -> GeneratedImplementation:
    return GeneratedImplementation(
        capability=capability,
        impl_generics=schema.impl_generics(),
        self_type=f"{schema.name}{schema.type_generics()}",
        where_clause=synthesize_where_clause(schema.where_clause, bounds, capability),
        body=generate_body(capability, arms, schema.is_enum),
    )


def derive(schema: TypeSchema, directive: str) -> Derivation:
    """Generate one implementation per requested capability.

    Parses the directive, validates the item and resolves the enum
    discriminant before any body is built, so a failure never yields a
    partial result.

    Args:
        schema: Parsed item.
        directive: Raw directive text.

    Returns:
        Derivation with implementations in request order.

    Raises:
        DeriveError: First parse or validation failure.
    """
    request = parse_request(directive)
    validate_schema(schema)

    discriminant = None
    if isinstance(schema.shape, EnumShape):
        discriminant = resolve_discriminant(schema.shape.attrs, schema.shape.variants)

    arms = classify_shape(schema)
    implementations = tuple(
        generate_implementation(schema, arms, capability, request.bounds)
        for capability in request.capabilities
    )
    return Derivation(
        item=schema, discriminant=discriminant, implementations=implementations
    )


def format_implementation(implementation: GeneratedImplementation) -> list[str]:
    header = (
        f"impl{implementation.impl_generics} {implementation.capability.path} "
        f"for {implementation.self_type}"
    )
    where_lines = render_where_clause(implementation.where_clause)
    body = _indent(list(implementation.body))

    if where_lines:
        return [header, *where_lines, "{", *body, "}"]
    if not body:
        return [f"{header} {{}}"]
    return [f"{header} {{", *body, "}"]


def render_derivation(derivation: Derivation) -> str:
    """Render the output buffer: the item source, then every impl block.

    Blocks are separated by one blank line; the text ends with exactly one
    newline.
    """
    parts: list[str] = []
    if derivation.item.source:
        parts.append(derivation.item.source.rstrip())
    for implementation in derivation.implementations:
        parts.append("\n".join(format_implementation(implementation)))
    return "\n\n".join(parts) + "\n"


# ===--- Schema loading ---=== #

_ITEM_SHAPE_KINDS = {"struct": "record", "tuple": "tuple", "unit": "unit"}


def _parse_skip(raw: str) -> frozenset[str]:
    return frozenset(name.strip() for name in raw.split(",") if name.strip())


def _parse_fields(element: ET.Element, shape_kind: str, owner: str) -> tuple[Field, ...]:
    fields: list[Field] = []
    for position, field_el in enumerate(element.findall("field")):
        if shape_kind == "record":
            key = field_el.get("name")
            if not key:
                raise SchemaError(f"Field {position} of `{owner}` is missing a name")
        else:
            key = str(position)
        fields.append(
            Field(key=key, ty=field_el.get("type", ""), skip=_parse_skip(field_el.get("skip", "")))
        )
    if shape_kind == "unit" and fields:
        raise SchemaError(f"Unit shape `{owner}` cannot declare fields")
    return tuple(fields)


def _parse_shape(element: ET.Element, owner: str) -> Shape:
    raw_kind = element.get("kind", "struct")
    shape_kind = _ITEM_SHAPE_KINDS.get(raw_kind)
    if shape_kind is None:
        raise SchemaError(f"Unknown shape kind `{raw_kind}` for `{owner}`")
    return Shape(kind=shape_kind, fields=_parse_fields(element, shape_kind, owner))


def _parse_generic(element: ET.Element, owner: str) -> GenericParam:
    name = element.get("name")
    kind = element.get("kind", "type")
    if not name:
        raise SchemaError(f"Generic parameter of `{owner}` is missing a name")
    if kind not in GENERIC_KINDS:
        raise SchemaError(f"Unknown generic kind `{kind}` for `{owner}`")
    if kind == "lifetime" and not name.startswith("'"):
        name = f"'{name}"
    const_type = element.get("type")
    if kind == "const" and not const_type:
        raise SchemaError(f"Const parameter `{name}` of `{owner}` is missing a type")
    return GenericParam(
        name=name,
        kind=kind,
        bounds=element.get("bounds"),
        const_type=const_type if kind == "const" else None,
        default=element.get("default"),
    )


def parse_schema_element(root: ET.Element) -> TypeSchema:
    """Build a TypeSchema from an `<item>` element.

    Expected layout:
        <item name="Test" kind="struct|tuple|unit|enum|union">
          <generic name="T" bounds="Default"/>
          <where>T: Send</where>
          <attr>repr(u8)</attr>
          <field name="a" type="T" skip="Debug"/>
          <variant name="A" kind="tuple"><field type="T"/></variant>
          <source>struct Test&lt;T&gt; { a: T }</source>
        </item>

    Raises:
        SchemaError: Unexpected root tag, missing names, unknown kinds.
    """
    if root.tag != "item":
        raise SchemaError(f"Expected <item> root element, got <{root.tag}>")
    name = root.get("name")
    if not name:
        raise SchemaError("<item> is missing a name")

    generics = tuple(_parse_generic(el, name) for el in root.findall("generic"))
    where_clause = tuple(
        " ".join(el.text.split()) for el in root.findall("where") if el.text and el.text.strip()
    )
    attrs = tuple(el.text.strip() for el in root.findall("attr") if el.text and el.text.strip())

    kind = root.get("kind", "struct")
    if kind == "enum":
        variants = []
        for index, variant_el in enumerate(root.findall("variant")):
            variant_name = variant_el.get("name")
            if not variant_name:
                raise SchemaError(f"Variant {index} of `{name}` is missing a name")
            variants.append(
                Variant(
                    name=variant_name,
                    index=index,
                    shape=_parse_shape(variant_el, f"{name}::{variant_name}"),
                )
            )
        shape = EnumShape(variants=tuple(variants), attrs=attrs)
    elif kind == "union":
        shape = UnionShape(fields=_parse_fields(root, "record", name))
    else:
        shape = _parse_shape(root, name)

    source_el = root.find("source")
    source = None
    if source_el is not None and source_el.text and source_el.text.strip():
        source = textwrap.dedent(source_el.text).strip()

    return TypeSchema(
        name=name,
        generics=generics,
        where_clause=where_clause,
        shape=shape,
        source=source,
    )


def parse_schema_text(text: str) -> TypeSchema:
    return parse_schema_element(ET.fromstring(text))


def load_schema(path: Path) -> TypeSchema:
    return parse_schema_element(ET.parse(path).getroot())


# ===--- Discovery ---=== #


def format_capabilities_table() -> str:
    """Return the --list-capabilities output.

    Output format:

        8 derivable capabilities:

          Clone       ::core::clone::Clone     duplicate by value
          ...
    """
    name_width = max(len(name) for name in CAPABILITIES)
    path_width = max(len(capability.path) for capability in CAPABILITIES.values())
    lines = [f"{len(CAPABILITIES)} derivable capabilities:", ""]
    for capability in CAPABILITIES.values():
        lines.append(
            f"  {capability.name.ljust(name_width)}  "
            f"{capability.path.ljust(path_width)}  {capability.behavior}"
        )
    lines.append("")
    return "\n".join(lines)


def run_discovery(config: DiscoveryConfig) -> None:
    if config.command == "list-capabilities":
        print(format_capabilities_table(), end="")


# ===--- Output writer ---=== #


@dataclass(frozen=True)
class FileWriteResult:
    """Result of writing the generated source.

    Attributes:
        path: Path written.
        line_count: Number of newline characters in the written content.
        byte_count: Number of bytes written (UTF-8 encoded).
    """

    path: Path
    line_count: int
    byte_count: int


def write_output(path: Path, source: str) -> FileWriteResult:
    """Write generated source to `path`, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = source.encode("utf-8")
    path.write_bytes(data)
    return FileWriteResult(path=path, line_count=source.count("\n"), byte_count=len(data))


# ===--- Summary report ---=== #


@dataclass(frozen=True)
class ImplementationRow:
    """One row of the "Implementations:" section.

    Attributes:
        capability: Capability name.
        predicate_count: Number of where-clause predicates on the impl.
        line_count: Rendered line count of the impl block.
    """

    capability: str
    predicate_count: int
    line_count: int


@dataclass(frozen=True)
class DeriveSummary:
    item_label: str
    discriminant_label: str | None
    output_path: str
    rows: tuple[ImplementationRow, ...]
    total_lines: int


def build_derive_summary(
    derivation: Derivation, write_result: FileWriteResult
) -> DeriveSummary:
    rows = tuple(
        ImplementationRow(
            capability=implementation.capability.name,
            predicate_count=len(implementation.where_clause),
            line_count=len(format_implementation(implementation)),
        )
        for implementation in derivation.implementations
    )
    discriminant = derivation.discriminant
    return DeriveSummary(
        item_label=describe_item(derivation.item),
        discriminant_label=str(discriminant) if discriminant is not None else None,
        output_path=str(write_result.path),
        rows=rows,
        total_lines=write_result.line_count,
    )


def format_derive_summary(summary: DeriveSummary) -> str:
    """Render a DeriveSummary for the console.

    The Discriminant row appears only for enums. Returns a string with
    exactly one trailing newline.
    """
    lines = [f"{_plural(len(summary.rows), 'implementation')} generated:", ""]
    lines.append(f"  Item:          {summary.item_label}")
    if summary.discriminant_label is not None:
        lines.append(f"  Discriminant:  {summary.discriminant_label}")
    lines.append(f"  Output:        {summary.output_path}")
    lines.append("")
    lines.append("  Implementations:")
    for row in summary.rows:
        bounds = _plural(row.predicate_count, "predicate")
        lines.append(f"    {row.capability:<12}{bounds:<16}{_plural(row.line_count, 'line')}")
    lines.append("")
    lines.append(f"  Total: {summary.total_lines:,} lines")
    lines.append("")
    return "\n".join(lines)


def print_derive_summary(summary: DeriveSummary) -> None:
    print(format_derive_summary(summary), end="")


# ===--- Pipeline ---=== #


def run_generate(config: GenerateConfig) -> Derivation:
    """Load the schema, derive, and emit the generated source.

    Without an output path the source alone is printed to stdout. With one,
    progress lines and a summary are printed and the source goes to the file.

    Raises:
        OSError: Schema not readable or output not writable.
        ET.ParseError: Malformed schema XML.
        SchemaError: Schema XML that does not describe an item.
        DeriveError: Directive or item rejected by the generator.
    """
    report = config.output is not None

    if report:
        print(f"Loading: {config.schema}")
    schema = load_schema(config.schema)
    if report:
        print(f"  Item: {describe_item(schema)}")

    derivation = derive(schema, config.directive)
    source = render_derivation(derivation)

    if config.output is None:
        print(source, end="")
        return derivation

    names = ", ".join(impl.capability.name for impl in derivation.implementations)
    print(f"  Derived: {names}")
    result = write_output(config.output, source)
    print(f"  Written: {result.line_count} lines to {result.path}")
    print_derive_summary(build_derive_summary(derivation, result))
    return derivation


# ===--- Main generation ---=== #


def main(argv: list[str] | None = None) -> None:
    try:
        config = build_config(argv)
    except ConfigError as err:
        print(f"Config error [{err.code}]: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err

    if isinstance(config, DiscoveryConfig):
        run_discovery(config)
        return

    try:
        run_generate(config)
    except DeriveError as err:
        location = f" at {err.span}" if err.span is not None else ""
        print(f"Derive error [{err.code}]{location}: {err.message}")
        if err.suggestion:
            print(f"Hint: {err.suggestion}")
        raise SystemExit(1) from err
    except (OSError, ET.ParseError, SchemaError) as err:
        print(f"Error: {err}")
        raise SystemExit(1) from err


if __name__ == "__main__":
    main()
