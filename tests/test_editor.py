import asyncio
from datetime import datetime, timezone
from pathlib import Path

import pytest

from form_content_engine.document_store import InMemoryDocumentStore
from form_content_engine.editor import NodeEditor
from form_content_engine.errors import ValidationRequired
from form_content_engine.field_registry import InMemoryFieldRegistry
from form_content_engine.invalidation import EditPolicy
from form_content_engine.invoker import LocalInvoker
from form_content_engine.models.node import NodeDocument
from form_content_engine.models.registry import FieldEntry
from form_content_engine.models.validation import ValidationStatus
from form_content_engine.renderers import SectionFrame

FIXTURES = Path(__file__).resolve().parent / "data" / "nodes"
NOW = datetime(2026, 2, 1, 8, 0, tzinfo=timezone.utc)
NODE_ID = "node_storyboard"

IDEA = "root.job#idea.value"
GENRE = "root.job#input.genre.value"
TITLE = "root.job#movie_info.title.value"
LOGLINE = "root.job#movie_info.logline.value"
NAME_1 = "root.job#chars.1.name.value"
NAME_2 = "root.job#chars.2.name.value"
GENDER_2 = "root.job#chars.2.gender.value"
CLIPS = "root.job#timeline.clips.value"


def load_fixture(name: str) -> NodeDocument:
    fixture_path = FIXTURES / f"{name}.json"
    return NodeDocument.model_validate_json(fixture_path.read_text(encoding="utf-8"))


def build_editor(
    store: InMemoryDocumentStore | None = None, **document_fields
) -> tuple[NodeEditor, InMemoryDocumentStore, LocalInvoker]:
    if store is None:
        store = InMemoryDocumentStore()
        store.put(load_fixture("storyboard").model_copy(update=document_fields))
    registry = InMemoryFieldRegistry(
        [
            FieldEntry(id="idea", widget="textarea"),
            FieldEntry(id="genre", widget="select", default_value="drama"),
            FieldEntry(id="title", widget="text"),
            FieldEntry(id="logline", datatype="text"),
            FieldEntry(id="name"),
            FieldEntry(id="gender", widget="radio"),
            FieldEntry(id="clips", datatype="array"),
        ]
    )
    invoker = LocalInvoker()
    editor = NodeEditor(
        document_store=store,
        registry=registry,
        invoker=invoker,
        autosave_delay=0.01,
        clock=lambda: NOW,
    )
    return editor, store, invoker


def test_open_seeds_values_and_registry_defaults():
    editor, _, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        return editor.get(TITLE), editor.get(GENRE), editor.get(NAME_2)

    assert asyncio.run(scenario()) == ("Starfall", "drama", "Oren")
    assert editor.address_map.failures == []
    assert len(editor.address_map.addresses()) == 9


def test_save_then_reload_round_trips_dirty_values():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "Starfall Rising")
        editor.set(GENDER_2, "male")
        dirty = dict(editor.drafts.dirty_entries())
        outcome = await editor.save_all()

        reopened, _, _ = build_editor(store)
        await reopened.open(NODE_ID)
        return dirty, outcome, {address: reopened.get(address) for address in dirty}

    dirty, outcome, reloaded = asyncio.run(scenario())

    assert outcome.ok
    assert outcome.sections == ["chars", "movie_info"]
    assert reloaded == dirty
    saved = store.load(NODE_ID)
    assert saved.section_timestamps["movie_info"] == NOW
    assert saved.section_timestamps["chars"] == NOW
    assert saved.section_timestamps["timeline"] < NOW


class QuotaStore(InMemoryDocumentStore):
    """Refuses the title field, accepts everything else."""

    def save(self, node_id, patch):
        refused = {address: "quota exceeded" for address in patch.values if address == TITLE}
        kept = {address: value for address, value in patch.values.items() if address not in refused}
        receipt = super().save(node_id, patch.model_copy(update={"values": kept}))
        return receipt.model_copy(update={"rejected": {**receipt.rejected, **refused}})


def test_rejected_sections_keep_their_timestamp_and_warning():
    store = QuotaStore()
    store.put(load_fixture("storyboard").model_copy(update={"section_warnings": {"movie_info": True}}))
    editor, _, _ = build_editor(store)

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "Starfall Rising")
        editor.set(NAME_1, "Mira Vance")
        return await editor.save_all()

    outcome = asyncio.run(scenario())

    assert outcome.failed == {TITLE: "quota exceeded"}
    assert outcome.sections == ["chars"]
    saved = store.load(NODE_ID)
    assert saved.values[TITLE] == "Starfall"
    assert saved.values[NAME_1] == "Mira Vance"
    assert saved.section_timestamps["movie_info"] == datetime(2026, 1, 5, 10, 0, tzinfo=timezone.utc)
    assert saved.section_warnings["movie_info"] is True
    assert saved.section_timestamps["chars"] == NOW
    assert saved.section_warnings["chars"] is False
    assert editor.document.section_warnings["movie_info"] is True
    assert editor.drafts.entry(TITLE).error == "quota exceeded"


def test_set_rejects_addresses_from_other_nodes():
    editor, _, _ = build_editor()
    asyncio.run(editor.open(NODE_ID))

    with pytest.raises(ValueError):
        editor.set("root.other#title.value", "x")
    with pytest.raises(ValueError):
        editor.set("title", "x")


def test_save_is_gated_until_validation_passes():
    editor, store, invoker = build_editor(validators={"node": "validate-node"})
    invoker.register("validate-node", lambda payload: {"valid": True})

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "Starfall Rising")
        with pytest.raises(ValidationRequired):
            await editor.save_all()
        result = await editor.validate("node")
        outcome = await editor.save_all()
        return result, outcome

    result, outcome = asyncio.run(scenario())

    assert result.status == ValidationStatus.valid
    assert outcome.ok
    assert store.load(NODE_ID).values[TITLE] == "Starfall Rising"


def test_validated_edits_are_what_gets_saved():
    editor, store, invoker = build_editor(validators={"node": "validate-node"})
    invoker.register("validate-node", lambda payload: {"valid": True})

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "Unchecked")
        await editor.validate("node", {TITLE: "Checked"})
        return await editor.save_all()

    outcome = asyncio.run(scenario())

    assert outcome.saved == [TITLE]
    assert store.load(NODE_ID).values[TITLE] == "Checked"


def test_required_fields_block_saving_and_show_in_the_render_plan():
    editor, store, invoker = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "   ")
        result = await editor.validate("node")
        with pytest.raises(ValidationRequired):
            await editor.save_all()
        return result, editor.render()

    result, plan = asyncio.run(scenario())

    assert result.status == ValidationStatus.invalid
    assert [reason.text() for reason in result.reasons] == ["title is required"]
    assert invoker.calls == []
    assert store.saves == []
    movie_info = next(node for node in plan if isinstance(node, SectionFrame) and node.path == "movie_info")
    title = next(child for child in movie_info.children if getattr(child, "address", None) == TITLE)
    assert title.error == "title is required"


def test_autosave_waits_for_validation():
    editor, store, _ = build_editor(validators={"node": "validate-node"})

    async def scenario():
        await editor.open(NODE_ID)
        editor.set_edit_mode(True)
        editor.set(TITLE, "Unvalidated")
        await asyncio.sleep(0.05)
        return editor.drafts.is_dirty()

    assert asyncio.run(scenario())
    assert store.saves == []


def test_close_flushes_pending_autosave():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        editor.set_edit_mode(True)
        editor.set(LOGLINE, "Rewritten")
        await editor.close()

    asyncio.run(scenario())

    assert store.load(NODE_ID).values[LOGLINE] == "Rewritten"
    with pytest.raises(RuntimeError):
        editor.document


def test_collection_instances_persist_and_tear_down_drafts():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(NAME_2, "Oren the Bold")
        removed = await editor.remove_instance("chars", 2)
        blocked = await editor.remove_instance("chars", 1)
        added = await editor.add_instance("chars")
        return removed, blocked, added

    removed, blocked, added = asyncio.run(scenario())

    assert removed is True
    assert blocked is False, "a collection never drops below its minimum"
    assert added.instance_id == 2
    assert editor.get(NAME_2) is None, "the removed instance's drafts are gone"
    saved = store.load(NODE_ID)
    assert NAME_2 not in saved.values
    assert [instance.instance_id for instance in saved.content.items[3].instances] == [1, 2]
    assert NAME_2 in editor.address_map.by_address


def test_reorder_keeps_addresses_stable():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        before = set(editor.address_map.addresses())
        moved = await editor.reorder_instance("chars", 0, 1)
        return moved, before, set(editor.address_map.addresses())

    moved, before, after = asyncio.run(scenario())

    assert moved
    assert before == after
    assert [i.instance_id for i in store.load(NODE_ID).content.items[3].instances] == [2, 1]
    assert editor.get(NAME_1) == "Mira"


def test_affected_sections_follow_the_pipeline():
    editor, _, _ = build_editor()
    asyncio.run(editor.open(NODE_ID))

    affected = editor.compute_affected_sections("movie_info")

    assert [stale.section for stale in affected] == ["chars", "timeline"]
    assert [stale.section for stale in editor.compute_affected_sections("input")] == [
        "movie_info",
        "chars",
        "timeline",
    ]


def test_delete_and_edit_clears_downstream_sections():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        return await editor.begin_edit("chars", EditPolicy.delete_and_edit)

    decision = asyncio.run(scenario())

    assert decision.error is None
    assert decision.affected_sections == ["timeline"]
    saved = store.load(NODE_ID)
    assert CLIPS not in saved.values
    assert saved.section_timestamps["timeline"] is None
    assert editor.get(CLIPS) is None
    assert saved.values[NAME_1] == "Mira"


def test_override_warns_until_section_is_saved_or_cleared():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        await editor.begin_edit("movie_info", "override")
        warned = dict(store.load(NODE_ID).section_warnings)
        editor.set(NAME_1, "Mira Vance")
        await editor.save_all()
        await editor.clear_warning("timeline")
        return warned

    warned = asyncio.run(scenario())

    assert warned == {"chars": True, "timeline": True}
    assert store.load(NODE_ID).section_warnings == {"chars": False, "timeline": False}
    assert store.load(NODE_ID).values[CLIPS] == ["opening", "vault", "escape"]


def test_discard_policy_reverts_section_drafts():
    editor, store, _ = build_editor()

    async def scenario():
        await editor.open(NODE_ID)
        editor.set(TITLE, "Abandoned")
        editor.set(NAME_1, "Kept")
        return await editor.begin_edit("movie_info", EditPolicy.discard)

    decision = asyncio.run(scenario())

    assert not decision.proceed
    assert editor.get(TITLE) == "Starfall"
    assert editor.get(NAME_1) == "Kept"
    assert store.saves == []


def test_generate_section_writes_and_timestamps_the_section():
    editor, store, invoker = build_editor(section_warnings={"movie_info": True})
    payloads = []

    def generate(payload):
        payloads.append(payload)
        return {"values": {"title": "Seedfall", "logline": "They steal the future.", "tagline": "?"}}

    invoker.register("generate-movie-info", generate)

    async def scenario():
        await editor.open(NODE_ID)
        return await editor.generate_section("movie_info")

    outcome = asyncio.run(scenario())

    assert outcome.ok
    assert sorted(outcome.written) == [LOGLINE, TITLE]
    assert outcome.skipped == ["tagline"]
    assert payloads[0]["job_id"] == "job_demo"
    assert payloads[0]["section"] == "movie_info"
    assert payloads[0]["upstream"] == {IDEA: "A heist aboard a generation ship"}
    saved = store.load(NODE_ID)
    assert saved.values[TITLE] == "Seedfall"
    assert saved.section_timestamps["movie_info"] == NOW
    assert saved.section_warnings["movie_info"] is False
    assert not editor.drafts.is_dirty()


def test_generation_errors_are_returned():
    editor, store, invoker = build_editor()

    def broken(payload):
        raise RuntimeError("quota exceeded")

    invoker.register("generate-movie-info", broken)

    async def scenario():
        await editor.open(NODE_ID)
        return await editor.generate_section("movie_info"), await editor.generate_section("timeline")

    failed, unconfigured = asyncio.run(scenario())

    assert "quota exceeded" in failed.error
    assert unconfigured.error == 'No generator configured for "timeline"'
    assert store.saves == []


def test_apply_suggested_fix_through_the_editor():
    editor, _, invoker = build_editor(validators={"chars.1": "validate-character"})
    invoker.register(
        "validate-character",
        lambda payload: {"valid": False, "reasons": ["Name too short"], "suggested_fix": {"name": "Mira Vance"}},
    )

    async def scenario():
        await editor.open(NODE_ID)
        result = await editor.validate("chars.1")
        applied = editor.apply_suggested_fix("chars.1")
        return result, applied

    result, applied = asyncio.run(scenario())

    assert result.status == ValidationStatus.invalid
    assert applied == [NAME_1]
    assert editor.get(NAME_1) == "Mira Vance"
    assert editor.validation.state("chars.1").status == ValidationStatus.idle


def test_toggle_collapsed_feeds_the_render_plan():
    editor, _, _ = build_editor()
    asyncio.run(editor.open(NODE_ID))

    assert editor.toggle_collapsed("movie_info") is True
    plan = editor.render()
    movie_info = plan[2]
    assert isinstance(movie_info, SectionFrame)
    assert movie_info.collapsed
    assert editor.toggle_collapsed("movie_info") is False
    with pytest.raises(KeyError):
        editor.toggle_collapsed("nowhere")
