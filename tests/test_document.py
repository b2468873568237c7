import json

import pytest

from src.errors import AssemblyError
from src.sandbox import policy
from src.sandbox.admission import validate
from src.sandbox.bridge import ContextKind
from src.sandbox.context import script_sources
from src.sandbox.document import (
    BINDING_PATH,
    SHIM_PATH,
    DocumentAssembler,
    background_scripts,
    content_scripts,
    issue_identity,
    system_assets,
)
from src.sandbox.virtual_fs import ResourceMaterializer
from tests.helpers import bundle

POPUP = """<!DOCTYPE html>
<html>
<head><title>Popup</title><link rel="stylesheet" href="style.css"></head>
<body>
<button id="go" onclick="go()">Go</button>
<a href="javascript:void(0)">link</a>
<img src="./icons/icon.png">
<script>alert('inline')</script>
<script src="a.js"></script>
<script src="b.js"></script>
<script src="https://cdn.example.com/lib.js"></script>
</body>
</html>"""


def _assemble(*files, **manifest):
    materializer = ResourceMaterializer(resource_base="/_preview")
    table = materializer.materialize(validate(bundle(*files, **manifest)), system_assets())
    return table, DocumentAssembler().assemble(table, issue_identity())


def _popup_files():
    return (
        ("popup.html", POPUP),
        ("a.js", "window.a = 1;"),
        ("b.js", "window.b = 2;"),
        ("style.css", "body { background: url('icons/icon.png'); }"),
        ("icons/icon.png", "iVBORw0KGgo="),
    )


def test_load_order_is_shim_then_declared_then_binding():
    table, docs = _assemble(*_popup_files())

    assert docs.popup.scripts() == [SHIM_PATH, "a.js", "b.js", BINDING_PATH]
    order = [table.path_for_reference(src) for src in script_sources(docs.popup.html)]
    assert order == [SHIM_PATH, "a.js", "b.js", BINDING_PATH]


def test_document_declares_nonce_only_script_policy():
    _, docs = _assemble(*_popup_files())
    html = docs.popup.html

    assert 'http-equiv="Content-Security-Policy"' in html
    assert f"script-src 'nonce-{docs.popup.nonce}'" in html
    assert "'unsafe-inline'; img-src" in html
    assert html.count(f'nonce="{docs.popup.nonce}"') == 4
    # CSP and identity come before the first script
    assert html.index("Content-Security-Policy") < html.index("<script")
    assert html.index("preview-identity") < html.index("<script")


def test_inline_execution_is_stripped():
    _, docs = _assemble(*_popup_files())
    html = docs.popup.html

    assert "onclick" not in html
    assert "javascript:" not in html
    assert "alert('inline')" not in html
    assert policy.scan_policy_violations(html) == []


def test_remote_scripts_are_dropped_with_a_warning():
    _, docs = _assemble(*_popup_files())

    assert "cdn.example.com" not in docs.popup.html
    assert any("cdn.example.com" in w for w in docs.warnings)


def test_assets_are_rewritten_to_references():
    table, docs = _assemble(*_popup_files())
    html = docs.popup.html

    assert f'href="{table.reference_for("style.css")}"' in html
    assert f'src="{table.reference_for("icons/icon.png")}"' in html
    assert 'href="style.css"' not in html


def test_identity_token_is_embedded():
    table, docs = _assemble(*_popup_files())

    assert f'content="{docs.identity}" data-context="extension"' in docs.popup.html


def test_background_scripts_load_before_popup_scripts():
    _, docs = _assemble(*_popup_files(), ("bg.js", "1;"), background={"service_worker": "bg.js"})

    assert docs.popup.scripts("bundle") == ["bg.js", "a.js", "b.js"]


def test_default_order_when_no_scripts_are_declared():
    _, docs = _assemble(("popup.js", "1;"))

    assert docs.popup.entry_path is None
    assert docs.popup.scripts() == [SHIM_PATH, "popup.js", BINDING_PATH]
    assert any("placeholder" in w for w in docs.warnings)


def test_entry_comes_from_manifest_action():
    page = "<html><head></head><body><script src='ui.js'></script></body></html>"
    _, docs = _assemble(("ui/main.html", page), ("ui/ui.js", "1;"), action={"default_popup": "ui/main.html"})

    assert docs.popup.entry_path == "ui/main.html"
    assert docs.popup.scripts("bundle") == ["ui/ui.js"]


def test_missing_declared_script_is_skipped_with_warning():
    _, docs = _assemble(("popup.html", '<body><script src="gone.js"></script></body>'))

    assert docs.popup.scripts("bundle") == []
    assert any("gone.js" in w for w in docs.warnings)


def test_content_scripts_build_a_page_document():
    manifest = {"content_scripts": [{"matches": ["<all_urls>"], "js": ["cs1.js", "cs2.js"]}]}
    _, docs = _assemble(("popup.js", "1;"), ("cs1.js", "1;"), ("cs2.js", "2;"), **manifest)

    assert docs.page is not None
    assert docs.page.context == ContextKind.PAGE
    assert docs.page.scripts() == [SHIM_PATH, "cs1.js", "cs2.js", BINDING_PATH]
    assert "cs1.js" not in docs.popup.scripts()
    assert 'data-context="page"' in docs.page.html


def test_no_page_document_without_content_scripts():
    _, docs = _assemble(("popup.js", "1;"))

    assert docs.page is None
    assert docs.documents == [docs.popup]


def test_missing_system_asset_is_an_assembly_error(materializer):
    table = materializer.materialize(validate(bundle(("popup.js", "1;"))))

    with pytest.raises(AssemblyError) as exc:
        DocumentAssembler().assemble(table, "token")
    assert exc.value.code == "load_failed"


def test_manifest_helpers():
    assert background_scripts({"background": {"scripts": ["a.js", "./b.js"]}}) == ["a.js", "b.js"]
    assert background_scripts({"background": "bg.js"}) == []
    assert content_scripts({"content_scripts": [{"js": ["a.js"]}, {"js": ["a.js", "b.js"]}]}) == ["a.js", "b.js"]
    assert content_scripts(json.loads('{"content_scripts": "nope"}')) == []


def test_strip_inline_execution_leaves_text_alone():
    html = "<p>if one = 1 then</p><div onload='x()'>t</div>"

    stripped = policy.strip_inline_execution(html)

    assert "if one = 1 then" in stripped
    assert "onload" not in stripped


def test_preview_server_origin_is_allowed_for_resources():
    materializer = ResourceMaterializer(resource_base="/_preview")
    table = materializer.materialize(validate(bundle(("popup.js", "1;"))), system_assets())
    assembler = DocumentAssembler(origin="https://preview.example.com/", resource_base="/_preview")

    popup = assembler.assemble(table, issue_identity()).popup

    assert assembler.resource_sources == ["https://preview.example.com", "wss://preview.example.com"]
    assert "connect-src 'self' https://preview.example.com wss://preview.example.com" in popup.html
    assert 'data-base="/_preview"' in popup.html
    assert popup.identity in popup.html


def test_csp_without_resource_origins():
    csp = policy.build_csp(["'nonce-abc'"])

    assert "connect-src 'self';" in csp
    assert "script-src 'nonce-abc'" in csp
