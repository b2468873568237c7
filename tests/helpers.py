import json


def manifest(**overrides) -> str:
    data = {
        "manifest_version": 3,
        "name": "Test Extension",
        "version": "1.0.0",
        "description": "An extension under test",
    }
    data.update(overrides)
    return json.dumps(data)


def bundle(*files, **manifest_overrides) -> dict:
    """A FileSet dict with a valid manifest.json followed by ``files`` ((path, content) pairs)."""
    entries = [{"path": "manifest.json", "content": manifest(**manifest_overrides)}]
    entries += [{"path": path, "content": content} for path, content in files]
    return {"files": entries}
