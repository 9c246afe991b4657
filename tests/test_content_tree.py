from form_content_engine.content_tree import (
    collect_field_refs,
    find_collection,
    find_section,
    is_blank,
    is_empty,
    iter_field_slots,
    section_is_empty,
    validate_structure,
)
from form_content_engine.models.content import FormContent
from form_content_engine.models.node import NodeDocument

NODE = "root.job"


def build_tree(items: list[dict]) -> FormContent:
    return FormContent.model_validate({"items": items})


def field(ref: str, **extra) -> dict:
    return {"kind": "FieldItem", "ref": ref, **extra}


def characters_tree() -> FormContent:
    return build_tree(
        [
            {
                "kind": "CollectionSectionItem",
                "path": "chars",
                "template": [field("name")],
                "instances": [
                    {"instance_id": 1, "children": [field("name")]},
                    {"instance_id": 2, "children": [field("name"), field("age")]},
                ],
            }
        ]
    )


def nested_tree() -> FormContent:
    return build_tree(
        [
            {
                "kind": "SectionItem",
                "path": "story",
                "children": [
                    {
                        "kind": "CollectionSectionItem",
                        "path": "chars",
                        "template": [],
                        "instances": [
                            {
                                "instance_id": 1,
                                "children": [
                                    field("name"),
                                    {"kind": "SectionItem", "path": "details", "children": [field("bio")]},
                                ],
                            }
                        ],
                    }
                ],
            }
        ]
    )


def test_collect_field_refs_descends_into_instances():
    refs = collect_field_refs(characters_tree())

    assert refs == {"name", "age"}, "fields that only exist inside an instance must be collected"


def test_iter_field_slots_yields_one_slot_per_instance():
    slots = list(iter_field_slots(characters_tree()))

    assert [(slot.section_path, slot.instance_id, slot.field_ref) for slot in slots] == [
        ("chars", 1, "name"),
        ("chars", 2, "name"),
        ("chars", 2, "age"),
    ]
    assert [slot.address(NODE) for slot in slots] == [
        "root.job#chars.1.name.value",
        "root.job#chars.2.name.value",
        "root.job#chars.2.age.value",
    ]
    assert all(slot.top_section == "chars" for slot in slots)


def test_nested_sections_inside_instances_keep_instance_segment():
    addresses = [slot.address(NODE) for slot in iter_field_slots(nested_tree())]

    assert addresses == [
        "root.job#story.chars.1.name.value",
        "root.job#story.chars.1.details.bio.value",
    ]


def test_blank_values():
    for value in (None, "", "   ", [], {}, False, 0):
        assert is_blank(value), f"{value!r} should count as blank"
    for value in ("x", ["a"], {"k": 1}, True, 3):
        assert not is_blank(value), f"{value!r} should count as filled"


def test_is_empty_looks_through_sections_and_collections():
    tree = characters_tree()

    assert is_empty(tree, {}, NODE)
    assert is_empty(tree, {"root.job#chars.1.name.value": "  "}, NODE)
    assert not is_empty(tree, {"root.job#chars.2.age.value": 31}, NODE)


def test_is_empty_treats_unresolvable_fields_as_empty():
    tree = build_tree([{"kind": "FieldItem", "idx": 0}])

    assert is_empty(tree, {"root.job#anything.value": "x"}, NODE)


def test_section_is_empty_is_scoped_to_one_progressive_section():
    document = NodeDocument(
        id="n1",
        path=NODE,
        content=build_tree(
            [
                field("idea"),
                {"kind": "SectionItem", "path": "stage1", "children": [field("a")]},
                {"kind": "SectionItem", "path": "stage2", "children": [field("b")]},
            ]
        ),
        values={"root.job#idea.value": "pitch", "root.job#stage2.b.value": "done"},
    )

    assert not section_is_empty(document, "input"), "top-level fields belong to the root section"
    assert section_is_empty(document, "stage1")
    assert not section_is_empty(document, "stage2")


def test_validate_structure_reports_without_raising():
    tree = build_tree(
        [
            field("title", idx=0),
            field("title", idx=1),
            {"kind": "FieldItem", "idx": 2},
            field("first name", idx=3),
            {"kind": "SectionItem", "path": "a", "idx": 4, "children": [field("title")]},
        ]
    )

    issues = validate_structure(tree)

    codes = sorted(issue.code for issue in issues)
    assert codes == ["duplicate_sibling", "unresolved_field", "unresolved_field"]
    assert {issue.item_idx for issue in issues} == {1, 2, 3}


def test_validate_structure_accepts_same_ref_in_different_sections():
    tree = build_tree(
        [
            {"kind": "SectionItem", "path": "a", "children": [field("title")]},
            {"kind": "SectionItem", "path": "b", "children": [field("title")]},
        ]
    )

    assert validate_structure(tree) == []


def test_validate_structure_flags_repeated_instance_ids():
    tree = build_tree(
        [
            {
                "kind": "CollectionSectionItem",
                "path": "chars",
                "instances": [
                    {"instance_id": 1, "children": [field("name")]},
                    {"instance_id": 1, "children": [field("name")]},
                ],
            }
        ]
    )

    assert [issue.code for issue in validate_structure(tree)] == ["duplicate_sibling"]


def test_find_helpers_follow_composed_paths():
    tree = nested_tree()

    collection = find_collection(tree, "story.chars")
    section = find_section(tree, "story.chars.1.details")

    assert collection is not None and collection.path == "chars"
    assert section is not None and section.path == "details"
    assert find_collection(tree, "story") is None
    assert find_section(tree, "story.chars.2.details") is None
