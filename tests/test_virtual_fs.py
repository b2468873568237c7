import base64

import pytest

from src.errors import AssemblyError
from src.sandbox.admission import validate
from src.sandbox.virtual_fs import ResourceMaterializer
from tests.helpers import bundle


def _validated(*files):
    return validate(bundle(*files))


def test_materialize_mints_one_handle_per_file(materializer):
    table = materializer.materialize(_validated(("popup.js", "1;"), ("style.css", "body{}")))

    assert len(table) == 3
    assert {h.path for h in table} == {"manifest.json", "popup.js", "style.css"}
    assert table.handle_for("popup.js").media_type == "application/javascript"
    assert table.handle_for("./style.css").media_type == "text/css"
    assert all(h.generation == table.generation for h in table)


def test_references_are_redeemable_until_retired(materializer):
    table = materializer.materialize(_validated(("popup.js", "console.log(1);")))
    reference = table.reference_for("popup.js")

    media_type, payload = materializer.redeem(reference)
    assert media_type == "application/javascript"
    assert payload == b"console.log(1);"

    assert materializer.retire(table.generation) is True
    with pytest.raises(AssemblyError) as exc:
        materializer.redeem(reference)
    assert exc.value.code == "reference_exhausted"


def test_retire_leaves_no_live_references(materializer):
    table = materializer.materialize(_validated(("popup.js", "1;")), {"__preview__/shim.js": "shim"})
    assert materializer.live_reference_count(table.generation) == 3

    materializer.retire(table.generation)

    assert materializer.live_reference_count(table.generation) == 0
    assert materializer.table(table.generation) is None
    assert materializer.is_retired(table.generation)


def test_retire_twice_is_a_no_op(materializer):
    first = materializer.materialize(_validated(("popup.js", "1;")))
    second = materializer.materialize(_validated(("popup.js", "2;")))
    materializer.retire(first.generation)
    state = (materializer.live_generations(), materializer.live_reference_count())

    assert materializer.retire(first.generation) is False
    assert (materializer.live_generations(), materializer.live_reference_count()) == state


def test_retire_unknown_generation_is_a_no_op(materializer):
    table = materializer.materialize(_validated())

    assert materializer.retire(999) is False
    assert materializer.live_generations() == [table.generation]


def test_generations_never_share_references(materializer):
    files = _validated(("popup.js", "1;"))
    first = materializer.materialize(files)
    second = materializer.materialize(files)

    assert second.generation > first.generation
    first_refs = {h.ephemeral_reference for h in first.all_handles()}
    second_refs = {h.ephemeral_reference for h in second.all_handles()}
    assert not first_refs & second_refs

    materializer.retire(first.generation)
    assert materializer.redeem(second.reference_for("popup.js"))[1] == b"1;"


def test_system_files_are_counted_separately(materializer):
    table = materializer.materialize(_validated(("popup.js", "1;")), {"__preview__/shim.js": "shim"})

    assert len(table) == 2
    assert table.system_handle("__preview__/shim.js").system is True
    assert "__preview__/shim.js" not in table


def test_binary_payloads_are_decoded(materializer):
    raw = bytes(range(16))
    encoded = "data:image/png;base64," + base64.b64encode(raw).decode()
    table = materializer.materialize(_validated(("icon.png", encoded)))

    media_type, payload = materializer.redeem(table.reference_for("icon.png"))

    assert media_type == "image/png"
    assert payload == raw


def test_references_use_the_configured_base():
    materializer = ResourceMaterializer(resource_base="/sandbox/")
    table = materializer.materialize(_validated(("popup.js", "1;")))

    reference = table.reference_for("popup.js")
    assert reference.startswith("/sandbox/")
    assert reference.endswith("/popup.js")
    assert table.path_for_reference(reference) == "popup.js"


def test_foreign_references_are_rejected(materializer):
    with pytest.raises(AssemblyError):
        materializer.redeem("https://example.com/popup.js")
