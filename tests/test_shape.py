import pytest

import derive_gen

CLONE = derive_gen.CAPABILITIES["Clone"]
DEBUG = derive_gen.CAPABILITIES["Debug"]


def test_record_item_classifies_as_single_arm(make_schema, make_record) -> None:
    schema = make_schema(shape=make_record("a", "b"))

    (arm,) = derive_gen.classify_shape(schema)

    assert arm.label == "Test"
    assert arm.pattern == "Test"
    assert arm.index is None
    assert [field.key for field in arm.shape.fields] == ["a", "b"]


def test_enum_classifies_one_arm_per_variant(make_schema, make_enum, make_tuple) -> None:
    shape = make_enum(("A", make_tuple(1)), ("B", derive_gen.Shape("unit")))
    schema = make_schema(shape=shape)

    arms = derive_gen.classify_shape(schema)

    assert [(arm.label, arm.pattern, arm.index) for arm in arms] == [
        ("A", "Test::A", 0),
        ("B", "Test::B", 1),
    ]


def test_field_bindings_use_self_and_other_aliases(make_record) -> None:
    bindings = derive_gen.field_bindings(make_record("a", "r#type"), CLONE)

    assert bindings == (
        derive_gen.FieldBinding("a", "__self_field_a", "__other_field_a"),
        derive_gen.FieldBinding("r#type", "__self_field_type", "__other_field_type"),
    )


def test_field_bindings_leave_out_skipped_fields(make_record) -> None:
    shape = make_record("a", "b", skip={"a": frozenset({"Debug"})})

    assert [b.key for b in derive_gen.field_bindings(shape, DEBUG)] == ["b"]
    assert [b.key for b in derive_gen.field_bindings(shape, CLONE)] == ["a", "b"]


def test_destructure_record(make_record) -> None:
    arm = derive_gen.Arm("Test", "Test", make_record("a", "r#type"))

    assert (
        derive_gen.destructure(arm, CLONE, derive_gen.SELF_PREFIX)
        == "Test { a: __self_field_a, r#type: __self_field_type }"
    )
    assert (
        derive_gen.destructure(arm, CLONE, derive_gen.OTHER_PREFIX)
        == "Test { a: __other_field_a, r#type: __other_field_type }"
    )


def test_destructure_record_with_skipped_field(make_record) -> None:
    shape = make_record("a", "b", skip={"b": frozenset({"Debug"})})
    arm = derive_gen.Arm("Test", "Test", shape)

    assert (
        derive_gen.destructure(arm, DEBUG, derive_gen.SELF_PREFIX)
        == "Test { a: __self_field_a, .. }"
    )


def test_destructure_record_with_every_field_skipped(make_record) -> None:
    arm = derive_gen.Arm("Test", "Test", make_record("a", skip={"a": frozenset({"Debug"})}))

    assert derive_gen.destructure(arm, DEBUG, derive_gen.SELF_PREFIX) == "Test { .. }"


def test_destructure_empty_record() -> None:
    arm = derive_gen.Arm("Test", "Test", derive_gen.Shape("record"))

    assert derive_gen.destructure(arm, CLONE, derive_gen.SELF_PREFIX) == "Test {}"


def test_destructure_tuple_binds_skipped_positions_to_wildcard(make_tuple) -> None:
    arm = derive_gen.Arm("A", "Test::A", make_tuple(2, skip={1: frozenset({"Debug"})}))

    assert (
        derive_gen.destructure(arm, DEBUG, derive_gen.SELF_PREFIX)
        == "Test::A(__self_field_0, _)"
    )
    assert (
        derive_gen.destructure(arm, CLONE, derive_gen.OTHER_PREFIX)
        == "Test::A(__other_field_0, __other_field_1)"
    )


def test_destructure_unit_is_bare_path() -> None:
    arm = derive_gen.Arm("B", "Test::B", derive_gen.Shape("unit"), 1)

    assert derive_gen.destructure(arm, CLONE, derive_gen.SELF_PREFIX) == "Test::B"


@pytest.mark.parametrize(
    ("kind", "expected"),
    [("record", "Test::A { .. }"), ("tuple", "Test::A(..)"), ("unit", "Test::A")],
)
def test_skip_pattern_ignores_every_field(kind: str, expected: str) -> None:
    arm = derive_gen.Arm("A", "Test::A", derive_gen.Shape(kind), 0)

    assert derive_gen.skip_pattern(arm) == expected


def test_union_is_rejected(make_schema) -> None:
    schema = make_schema(shape=derive_gen.UnionShape((derive_gen.Field("a", "T"),)))

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(schema)

    assert exc_info.value.code == "UNSUPPORTED_SHAPE"
    assert exc_info.value.span is None


def test_generic_unit_record_is_rejected(make_schema) -> None:
    schema = make_schema(shape=derive_gen.Shape("unit"))

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(schema)

    assert exc_info.value.code == "UNSUPPORTED_SHAPE"


def test_plain_unit_record_is_accepted(make_schema) -> None:
    derive_gen.validate_schema(make_schema(generics=(), shape=derive_gen.Shape("unit")))


def test_generic_enum_with_unit_variants_is_accepted(make_schema, make_enum) -> None:
    shape = make_enum(("A", derive_gen.Shape("unit")), ("B", derive_gen.Shape("unit")))

    derive_gen.validate_schema(make_schema(shape=shape))


def test_skip_of_unknown_capability_is_rejected(make_schema, make_record) -> None:
    schema = make_schema(shape=make_record("a", skip={"a": frozenset({"Display"})}))

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(schema)

    assert exc_info.value.code == "INVALID_DIRECTIVE"
    assert "skips unknown capability" in exc_info.value.message


@pytest.mark.parametrize("name", ["Clone", "Copy", "Eq"])
def test_skip_of_whole_value_capability_is_rejected(
    make_schema, make_enum, make_tuple, name: str
) -> None:
    shape = make_enum(("A", make_tuple(1, skip={0: frozenset({name})})))

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(make_schema(shape=shape))

    assert exc_info.value.code == "INVALID_DIRECTIVE"
    assert "cannot be skipped" in exc_info.value.message


@pytest.mark.parametrize(
    "skip",
    [
        {"PartialEq"},
        {"Hash"},
        {"PartialOrd"},
        {"Ord"},
        {"PartialOrd", "Ord"},
        {"PartialEq", "Hash", "Ord"},
        {"Debug", "PartialEq"},
    ],
)
def test_partial_equality_group_skip_is_rejected(
    make_schema, make_record, skip: set[str]
) -> None:
    schema = make_schema(shape=make_record("a", "b", skip={"b": frozenset(skip)}))

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(schema)

    assert exc_info.value.code == "INVALID_DIRECTIVE"
    assert "`b`" in exc_info.value.message
    assert exc_info.value.suggestion == "Skip PartialEq, Hash, PartialOrd and Ord together."


def test_partial_equality_group_skip_is_rejected_inside_variants(
    make_schema, make_enum, make_tuple
) -> None:
    shape = make_enum(
        ("A", derive_gen.Shape("unit")),
        ("B", make_tuple(2, skip={1: frozenset({"Hash", "PartialEq"})})),
    )

    with pytest.raises(derive_gen.DeriveError) as exc_info:
        derive_gen.validate_schema(make_schema(shape=shape))

    assert exc_info.value.code == "INVALID_DIRECTIVE"


@pytest.mark.parametrize(
    "skip",
    [
        frozenset({"Debug"}),
        derive_gen.EQ_HASH_ORD_GROUP,
        derive_gen.EQ_HASH_ORD_GROUP | {"Debug"},
    ],
)
def test_consistent_skip_is_accepted(make_schema, make_record, skip: frozenset[str]) -> None:
    derive_gen.validate_schema(make_schema(shape=make_record("a", "b", skip={"b": skip})))


def test_describe_item() -> None:
    record = derive_gen.TypeSchema(
        "Test",
        (derive_gen.GenericParam("T"),),
        shape=derive_gen.Shape("record", (derive_gen.Field("a", "T"),)),
    )
    unit = derive_gen.TypeSchema("Marker")
    enum = derive_gen.TypeSchema(
        "Choice",
        shape=derive_gen.EnumShape(
            (
                derive_gen.Variant("A", 0, derive_gen.Shape("unit")),
                derive_gen.Variant("B", 1, derive_gen.Shape("unit")),
            )
        ),
    )

    assert derive_gen.describe_item(record) == "Test<T> (record, 1 field)"
    assert derive_gen.describe_item(unit) == "Marker (unit)"
    assert derive_gen.describe_item(enum) == "Choice (enum, 2 variants)"


def test_impl_generics_keep_inline_bounds_and_drop_defaults() -> None:
    schema = derive_gen.TypeSchema(
        "Test",
        generics=(
            derive_gen.GenericParam("'a", kind="lifetime"),
            derive_gen.GenericParam("T", bounds="Default", default="u8"),
            derive_gen.GenericParam("N", kind="const", const_type="usize", default="3"),
        ),
    )

    assert schema.impl_generics() == "<'a, T: Default, const N: usize>"
    assert schema.type_generics() == "<'a, T, N>"


def test_item_without_generics_has_empty_generic_lists() -> None:
    schema = derive_gen.TypeSchema("Test")

    assert schema.impl_generics() == ""
    assert schema.type_generics() == ""
