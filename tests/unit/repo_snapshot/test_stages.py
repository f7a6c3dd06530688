from __future__ import annotations

import base64
import errno
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from repo_snapshot.config import FileBatch
from repo_snapshot.events import EventBus
from repo_snapshot.exceptions import ConfigurationError
from repo_snapshot.file_manipulation import sha256_bytes
from repo_snapshot.pipeline import PipelineContext
from repo_snapshot.profiles import Profile
from repo_snapshot.rules import Rule, RuleEngine
from repo_snapshot.settings import RetrySettings, Settings
from repo_snapshot.stages import (
    DiscoveryStage,
    ExternalSourceStage,
    FilterStage,
    LoadingStage,
    RenderStage,
    list_files,
)
from repo_snapshot.task_limiter import TaskLimiter

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


def make_context(settings: Settings | None = None, profile: Profile | None = None) -> PipelineContext:
    return PipelineContext(settings=settings or Settings(), events=EventBus(), limiter=TaskLimiter(), profile=profile)


def write(root: Path, rel: str, data: str | bytes = "x") -> Path:
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(data, bytes):
        path.write_bytes(data)
    else:
        path.write_text(data, encoding="utf-8")
    return path


@pytest.mark.unit
def test_list_files_falls_back_to_walk(tmp_path: Path) -> None:
    write(tmp_path, "a.txt")

    files, method = list_files(tmp_path)

    assert method == "walk"
    assert files == [tmp_path / "a.txt"]


@pytest.mark.unit
async def test_discovery_lists_sorted_records(tmp_path: Path) -> None:
    write(tmp_path, "src/b.py")
    write(tmp_path, "a.md", "hello")
    write(tmp_path, "node_modules/dep.js")

    out = await DiscoveryStage().process(FileBatch(root=tmp_path), make_context(Settings(no_git=True, max_bytes=3)))

    assert [r.path for r in out.files] == ["a.md", "src/b.py"]
    assert out.root == tmp_path.resolve()
    assert out.files[0].size == 5
    assert out.files[0].is_too_big is True
    assert out.stats == {"discovered_count": 2, "discovery_method": "walk"}


@pytest.mark.unit
async def test_filter_applies_profile_rules(tmp_path: Path, make_file) -> None:
    files = (make_file("README.md"), make_file("CHANGELOG.md"), make_file("src/app.py"))
    profile = Profile(
        rules=[[Rule("extension", "=", "md")]],
        globalExcludeRules=[[Rule("basename", "=", "CHANGELOG.md")]],
    )

    out = await FilterStage().process(FileBatch(root=tmp_path, files=files), make_context(profile=profile))

    assert [r.path for r in out.files] == ["README.md"]
    assert out.stats == {"filtered_count": 1, "excluded_count": 2}


@pytest.mark.unit
async def test_filter_with_contents_rules_reads_files(tmp_path: Path, make_file) -> None:
    files = (make_file("a.py", "API_KEY = 1"), make_file("b.py", "print()"), make_file("c.bin", PNG))
    engine = RuleEngine((), [[Rule("contents", "contains", "API_KEY")]])

    out = await FilterStage(engine).process(FileBatch(root=tmp_path, files=files), make_context())

    assert [r.path for r in out.files] == ["b.py", "c.bin"]


@pytest.mark.unit
async def test_external_sources_are_merged_under_destination(tmp_path: Path, make_file) -> None:
    repo = tmp_path / "repo"
    write(tmp_path, "shared/guide.md")
    write(tmp_path, "shared/script.sh")
    write(tmp_path, "shared/nested/notes.md")
    write(repo, "vendor/guide.md")
    local = make_file("repo/vendor/guide.md").model_copy(update={"path": "vendor/guide.md"})
    profile = Profile(external=[{"source": "../shared", "destination": "vendor", "rules": ["*.md"]}])

    out = await ExternalSourceStage().process(FileBatch(root=repo, files=(local,)), make_context(profile=profile))

    assert [r.path for r in out.files] == ["vendor/guide.md", "vendor/nested/notes.md"]
    assert out.files[0] is local
    assert out.files[1].source == "../shared"
    assert out.stats["external_count"] == 1


@pytest.mark.unit
async def test_missing_external_source(tmp_path: Path) -> None:
    required = Profile(external=[{"source": "missing"}])
    optional = Profile(external=[{"source": "missing", "optional": True}])

    with pytest.raises(ConfigurationError, match="External source not found: missing"):
        await ExternalSourceStage().process(FileBatch(root=tmp_path), make_context(profile=required))

    out = await ExternalSourceStage().process(FileBatch(root=tmp_path), make_context(profile=optional))
    assert out.files == ()
    assert out.stats["external_count"] == 0


@pytest.mark.unit
async def test_loading_text_and_default_binary_policies(tmp_path: Path, make_file) -> None:
    files = (
        make_file("app.py", "print('é')\n"),
        make_file("logo.png", PNG),
        make_file("paper.pdf", b"%PDF-1.7\n\x00\x01binary"),
    )

    out = await LoadingStage().process(FileBatch(root=tmp_path, files=files), make_context())
    text, image, pdf = out.files

    assert text.content == "print('é')\n"
    assert text.content_hash == sha256_bytes("print('é')\n".encode())
    assert text.is_binary is False
    assert image.content == "[Binary file not included]"
    assert image.binary_category == "image"
    assert image.binary_name == "PNG"
    assert image.excluded_reason == "image"
    assert pdf.content == b"%PDF-1.7\n\x00\x01binary"
    assert pdf.encoding == "binary"
    assert pdf.binary_category == "document"
    assert out.stats["binary_count"] == 2
    assert out.stats["loaded_count"] == 3


@pytest.mark.unit
@pytest.mark.parametrize(
    ("policy", "expected"),
    [
        ("comment", {"content": "", "excluded_reason": "image"}),
        ("base64", {"content": base64.b64encode(PNG).decode("ascii"), "encoding": "base64"}),
        ("convert", {"content": PNG, "encoding": "binary"}),
    ],
)
async def test_loading_binary_policy(tmp_path: Path, make_file, policy: str, expected: dict) -> None:
    settings = Settings(binary_category_policy={"image": policy})

    out = await LoadingStage().process(FileBatch(root=tmp_path, files=(make_file("logo.png", PNG),)), make_context(settings))

    record = out.files[0]
    assert record.is_binary is True
    assert {key: getattr(record, key) for key in expected} == expected


@pytest.mark.unit
async def test_skip_policy_drops_the_file(tmp_path: Path, make_file) -> None:
    files = (make_file("logo.png", PNG), make_file("a.txt", "a"))

    out = await LoadingStage().process(FileBatch(root=tmp_path, files=files), make_context(Settings(binary_policy="skip")))

    assert [r.path for r in out.files] == ["a.txt"]
    assert out.stats["skipped_count"] == 1


@pytest.mark.unit
async def test_structure_only_files_are_not_read(tmp_path: Path, make_file, mocker: MockerFixture) -> None:
    record = make_file("vendor/lib.min.js", "x" * 100)
    read = mocker.spy(LoadingStage, "_load")

    out = await LoadingStage().process(
        FileBatch(root=tmp_path, files=(record,)),
        make_context(Settings(structure_only=["vendor/"])),
    )

    assert out.files[0].structure_only is True
    assert out.files[0].content == ""
    assert out.files[0].excluded_reason == "structure-only"
    assert read.call_count == 0


@pytest.mark.unit
async def test_unreadable_file_becomes_an_error_record(tmp_path: Path, make_file) -> None:
    record = make_file("gone.txt", "x")
    record.absolute_path.unlink()

    out = await LoadingStage().process(FileBatch(root=tmp_path, files=(record,)), make_context())

    assert out.files[0].error == "No such file or directory"
    assert out.files[0].content == "[Error loading file: No such file or directory]"
    assert out.stats["load_errors"] == 1


@pytest.mark.unit
async def test_transient_read_errors_are_retried(tmp_path: Path, make_file, mocker: MockerFixture) -> None:
    record = make_file("busy.txt", "x")
    mocker.patch.object(Path, "read_bytes", side_effect=[OSError(errno.EBUSY, "busy"), b"finally"])
    settings = Settings(fs_retry=RetrySettings(max_attempts=2, initial_delay=0))

    out = await LoadingStage().process(FileBatch(root=tmp_path, files=(record,)), make_context(settings))

    assert out.files[0].content == "finally"
    assert out.files[0].error is None


@pytest.mark.unit
async def test_render_streams_the_same_text_it_buffers(tmp_path: Path, make_file) -> None:
    batch = FileBatch(root=tmp_path, files=(make_file("a.py", "x = 1\n", content="x = 1\n"),))
    chunks: list[str] = []

    streamed = await RenderStage(chunks.append, generated_at="now").process(
        batch,
        make_context(Settings(stream=True)),
    )
    buffered = await RenderStage(generated_at="now").process(batch, make_context())

    assert streamed.output is None
    assert streamed.stats["chunks"] == len(chunks)
    assert "".join(chunks) == buffered.output
    assert buffered.stats["format"] == "md"


@pytest.mark.unit
async def test_render_format_follows_the_output_suffix(tmp_path: Path, make_file) -> None:
    batch = FileBatch(root=tmp_path, files=(make_file("a.py", "x", content="x"),))

    out = await RenderStage().process(batch, make_context(Settings(output=tmp_path / "out.jsonl")))

    assert out.stats["format"] == "jsonl"
    assert out.output.startswith("{")
