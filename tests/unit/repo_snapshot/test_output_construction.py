from __future__ import annotations

import json
import xml.etree.ElementTree as ET
from pathlib import Path

import pytest

from repo_snapshot.config import FileBatch, FileRecord
from repo_snapshot.output_construction import chunk_content, iter_chunks, render, resolve_format
from repo_snapshot.settings import Settings

GENERATED_AT = "2024-01-01T00:00:00+00:00"


def rec(path: str, content: str | bytes | None, **fields) -> FileRecord:
    return FileRecord(path=path, absolute_path=Path("/repo") / path, content=content, **fields)


@pytest.fixture
def batch() -> FileBatch:
    return FileBatch(
        root=Path("/repo"),
        files=(
            rec("src/app.py", "print('ok')\n", size=12, content_hash="deadbeef"),
            rec("logo.png", "", is_binary=True, binary_category="image", excluded_reason="image"),
            rec("data.csv", "a,b\n1,2\n", transformed=True, transformed_by="csv-first-lines"),
            rec("vendor/big.min.js", "", structure_only=True, excluded_reason="structure-only"),
        ),
    )


@pytest.mark.unit
def test_chunk_content_handles_empty_text() -> None:
    chunks = list(chunk_content("", chunk_chars=10))

    assert chunks == [(0, 0, "")]


@pytest.mark.unit
def test_chunk_content_splits_on_lines() -> None:
    text = "a\nbb\nccc\n"

    chunks = list(chunk_content(text, chunk_chars=4))

    assert chunks == [
        (1, 1, "a\n"),
        (2, 2, "bb\n"),
        (3, 3, "ccc\n"),
    ]


@pytest.mark.unit
@pytest.mark.parametrize(
    ("output", "fmt", "expected"),
    [
        (None, "", "md"),
        (Path("out.jsonl"), "", "jsonl"),
        (Path("out.XML"), "", "xml"),
        (Path("out.txt"), "", "md"),
        (Path("out.md"), "jsonl", "jsonl"),
    ],
)
def test_resolve_format(output: Path | None, fmt: str, expected: str) -> None:
    assert resolve_format(output, fmt) == expected


@pytest.mark.unit
def test_resolve_format_rejects_unknown() -> None:
    with pytest.raises(ValueError, match="Unknown output format"):
        resolve_format(None, "html")


@pytest.mark.unit
def test_markdown_renders_header_tree_and_fences(batch: FileBatch) -> None:
    output = render(batch, "md", Settings(), generated_at=GENERATED_AT)

    assert output.startswith("# Project Export for LLM\nroot=/repo\ngenerated_at=2024-01-01T00:00:00+00:00\nfiles=4\n")
    assert "## Structure\n```text\nrepo\n" in output
    assert "big.min.js" in output
    assert "\n## src/app.py\n```python\nprint('ok')\n```\n" in output
    assert "## logo.png\n<!-- binary file omitted: image -->\n" in output
    assert "## vendor/big.min.js" not in output


@pytest.mark.unit
def test_markdown_compact_mode_removes_extra_spacing() -> None:
    two = FileBatch(root=Path("/repo"), files=(rec("a.py", "print('compact')"), rec("b.py", "print('util')")))

    compact_output = render(two, "md", Settings(compact=True), generated_at=GENERATED_AT)
    standard_output = render(two, "md", Settings(compact=False), generated_at=GENERATED_AT)

    assert "print('compact')\n```\n## b.py" in compact_output
    assert "print('compact')\n```\n\n## b.py" in standard_output


@pytest.mark.unit
def test_raw_bytes_are_exported_as_placeholder() -> None:
    one = FileBatch(root=Path("/repo"), files=(rec("blob.bin", b"\x00\x01", is_binary=True),))

    output = render(one, "md", Settings(binary_placeholder_text="[omitted]"), generated_at=GENERATED_AT)

    assert "## blob.bin\n```text\n[omitted]\n```" in output


@pytest.mark.unit
def test_jsonl_lines_carry_metadata_and_chunks(batch: FileBatch) -> None:
    lines = render(batch, "jsonl", Settings(chunk_chars=5)).splitlines()
    items = [json.loads(line) for line in lines]

    assert [i["path"] for i in items] == ["src/app.py", "logo.png", "data.csv", "data.csv"]
    first = items[0]
    assert first["repo_root"] == "/repo"
    assert first["language"] == "python"
    assert first["sha256"] == "deadbeef"
    assert (first["start_line"], first["end_line"]) == (1, 1)
    assert items[1]["is_binary"] is True
    assert (items[3]["start_line"], items[3]["text"]) == (2, "1,2\n")
    assert items[3]["transformed_by"] == "csv-first-lines"


@pytest.mark.unit
def test_xml_is_well_formed(batch: FileBatch) -> None:
    text = render(batch, "xml", Settings(), generated_at=GENERATED_AT)

    root = ET.fromstring(text.split("\n", 1)[1])
    files = root.findall("file")

    assert root.tag == "snapshot"
    assert root.get("files") == "4"
    assert "app.py" in root.findtext("structure")
    assert [f.get("path") for f in files] == ["src/app.py", "logo.png", "data.csv"]
    assert files[0].text == "print('ok')\n"
    assert files[1].get("excluded") == "image"
    assert files[2].get("transformed_by") == "csv-first-lines"


@pytest.mark.unit
@pytest.mark.parametrize("fmt", ["md", "jsonl", "xml"])
def test_chunks_join_to_the_buffered_output(batch: FileBatch, fmt: str) -> None:
    settings = Settings()

    chunks = list(iter_chunks(batch, fmt, settings, generated_at=GENERATED_AT))

    assert len(chunks) > 1
    assert "".join(chunks) == render(batch, fmt, settings, generated_at=GENERATED_AT)
