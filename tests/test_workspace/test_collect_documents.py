import hashlib
from pathlib import Path

from viking_rag.workspace import collect_workspace_documents


def _write(root: Path, rel: str, text: str) -> None:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_collects_relative_posix_paths_with_sha256(tmp_path: Path):
    _write(tmp_path, "src/rag/index.py", "def index():\n    pass\n")
    _write(tmp_path, "README.md", "# demo\n")

    docs = collect_workspace_documents(tmp_path)

    by_path = {d.path: d for d in docs}
    assert set(by_path) == {"README.md", "src/rag/index.py"}
    doc = by_path["src/rag/index.py"]
    assert doc.content == "def index():\n    pass\n"
    assert doc.hash == hashlib.sha256(doc.content.encode("utf-8")).hexdigest()


def test_filters_extensions_dirs_sizes_and_empty_files(tmp_path: Path):
    _write(tmp_path, "keep.py", "x = 1\n")
    _write(tmp_path, "image.png", "not really")
    _write(tmp_path, "node_modules/lib/index.js", "module.exports = 1")
    _write(tmp_path, ".git/config", "[core]")
    _write(tmp_path, "blank.py", "   \n")
    _write(tmp_path, "huge.py", "y" * 2048)

    docs = collect_workspace_documents(
        tmp_path,
        include_extensions=[".py", ".js"],
        exclude_dirs=["node_modules", ".git"],
        max_file_bytes=1024,
    )

    assert [d.path for d in docs] == ["keep.py"]


def test_stops_at_file_cap(tmp_path: Path):
    for i in range(10):
        _write(tmp_path, f"f{i}.py", f"v = {i}\n")

    docs = collect_workspace_documents(tmp_path, max_files=4)

    assert len(docs) == 4


def test_missing_root_yields_nothing(tmp_path: Path):
    assert collect_workspace_documents(tmp_path / "absent") == []
