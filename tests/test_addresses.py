import pytest

from form_content_engine.addresses import (
    build_address_map,
    compose_section_path,
    in_scope,
    normalize_field_identifier,
    parse_address,
    resolve_address,
    scope_prefix,
    section_key_for,
)
from form_content_engine.content_tree import collect_field_refs
from form_content_engine.errors import FieldAddressUnresolved
from form_content_engine.models.content import FieldItem, FormContent

NODE = "root.job"


def build_tree(items: list[dict]) -> FormContent:
    return FormContent.model_validate({"items": items})


def characters_tree() -> FormContent:
    name = {"kind": "FieldItem", "ref": "name"}
    return build_tree(
        [
            {"kind": "FieldItem", "ref": "title"},
            {
                "kind": "CollectionSectionItem",
                "path": "chars",
                "template": [name],
                "instances": [
                    {"instance_id": 1, "children": [name]},
                    {"instance_id": 2, "children": [name]},
                ],
            },
        ]
    )


def test_instances_of_one_field_get_distinct_addresses():
    tree = characters_tree()

    assert collect_field_refs(tree) == {"title", "name"}
    first = resolve_address(NODE, "chars", 1, "name")
    second = resolve_address(NODE, "chars", 2, "name")
    assert first == "root.job#chars.1.name.value"
    assert second == "root.job#chars.2.name.value"
    assert first != second


def test_address_map_is_injective_over_the_tree():
    address_map = build_address_map(NODE, characters_tree())

    assert address_map.failures == []
    assert sorted(address_map.addresses()) == [
        "root.job#chars.1.name.value",
        "root.job#chars.2.name.value",
        "root.job#title.value",
    ]


def test_normalize_prefers_ref_then_name_then_id_then_path():
    assert normalize_field_identifier(FieldItem(ref="title", name="other", id="x")) == "title"
    assert normalize_field_identifier(FieldItem(name="logline", id="x")) == "logline"
    assert normalize_field_identifier(FieldItem(id="genre")) == "genre"
    assert normalize_field_identifier(FieldItem(path="timeline.clips"), "timeline") == "clips"


def test_normalize_fails_loudly():
    with pytest.raises(FieldAddressUnresolved):
        normalize_field_identifier(FieldItem(idx=3))
    with pytest.raises(FieldAddressUnresolved):
        normalize_field_identifier(FieldItem(ref="first name"))
    with pytest.raises(FieldAddressUnresolved):
        normalize_field_identifier(FieldItem(ref="2"))
    # A path naming the enclosing section refers to the section itself.
    with pytest.raises(FieldAddressUnresolved):
        normalize_field_identifier(FieldItem(path="input.details"), "details")


def test_colliding_fields_are_both_unresolved():
    tree = build_tree(
        [
            {"kind": "FieldItem", "ref": "title", "idx": 0},
            {"kind": "FieldItem", "name": "title", "idx": 1},
            {"kind": "FieldItem", "ref": "logline", "idx": 2},
        ]
    )

    address_map = build_address_map(NODE, tree)

    assert address_map.addresses() == ["root.job#logline.value"]
    assert address_map.collisions == {"root.job#title.value"}
    assert sorted(slot.item.idx for slot, _ in address_map.failures) == [0, 1]


def test_unresolvable_fields_are_collected_not_guessed():
    tree = build_tree([{"kind": "FieldItem", "idx": 0}, {"kind": "FieldItem", "ref": "ok", "idx": 1}])

    address_map = build_address_map(NODE, tree)

    assert address_map.addresses() == ["root.job#ok.value"]
    assert len(address_map.failures) == 1


def test_parse_address_inverts_resolution():
    location = parse_address("root.job#story.chars.2.name.value")

    assert location.node_path == "root.job"
    assert location.section_path == "story.chars"
    assert location.instance_id == 2
    assert location.field_ref == "name"
    assert location.address == "root.job#story.chars.2.name.value"


@pytest.mark.parametrize(
    "address",
    [
        "root.job#chars.2.name",
        "job#title.value",
        "root.job",
        "root.job#2.value",
        "root.job#1.name.value",
    ],
)
def test_parse_address_rejects_malformed_addresses(address):
    with pytest.raises(ValueError):
        parse_address(address)


def test_resolve_address_rejects_bad_instance_ids_and_node_paths():
    with pytest.raises(FieldAddressUnresolved):
        resolve_address(NODE, "chars", 0, "name")
    with pytest.raises(FieldAddressUnresolved):
        resolve_address(NODE, None, 1, "name")
    with pytest.raises(ValueError):
        resolve_address("job", "chars", 1, "name")


def test_compose_section_path_strips_absolute_child_paths():
    assert compose_section_path(None, "input") == "input"
    assert compose_section_path("input", "details") == "input.details"
    assert compose_section_path("input", "input.details") == "input.details"
    assert compose_section_path("story.chars.1", "chars.details", parent_raw="chars") == "story.chars.1.details"
    with pytest.raises(FieldAddressUnresolved):
        compose_section_path("input", "")


def test_section_key_for_maps_top_level_fields_to_root_section():
    assert section_key_for("root.job#idea.value", "input") == "input"
    assert section_key_for("root.job#chars.1.name.value", "input") == "chars"


def test_scopes_do_not_bleed_across_instance_ids():
    assert scope_prefix(NODE) == "root.job#"
    assert in_scope("root.job#chars.1.name.value", NODE, "chars.1")
    assert not in_scope("root.job#chars.10.name.value", NODE, "chars.1")
    assert in_scope("root.job#chars.10.name.value", NODE, "node")


def test_lookup_resolves_keys_within_a_unit():
    address_map = build_address_map(NODE, characters_tree())

    assert address_map.lookup("name", "chars.2") == ["root.job#chars.2.name.value"]
    assert len(address_map.lookup("name")) == 2
    assert address_map.lookup("chars.1.name") == ["root.job#chars.1.name.value"]
    assert address_map.lookup("root.job#title.value", "chars.1") == []
    assert address_map.lookup("missing") == []
