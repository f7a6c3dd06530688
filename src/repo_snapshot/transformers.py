"""Transformers turn file content into AI-friendly text.

Dispatch is a capability table: transformers are registered with the
extensions, MIME types and binary categories they serve (or with
``match_capability`` to be asked through ``can_handle``) and the highest
priority candidate wins.

Heavy transformers batch their work. ``transform`` returns a ``Deferred``
that is only resolved by ``flush``, which the transform stage calls once per
run after every per-file call has returned.
"""

from __future__ import annotations

import asyncio
import csv
import io
import json
import shutil
import subprocess  # noqa: S404
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Any, ClassVar, Protocol

from repo_snapshot.binary_detector import CATEGORIES, is_convertible_document
from repo_snapshot.exceptions import NoTransformerError, TransformError
from repo_snapshot.file_manipulation import pem_stub, redact_env, take_head_tail
from repo_snapshot.logging import logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from repo_snapshot.config import FileRecord
    from repo_snapshot.settings import Settings


class DocumentConverter(Protocol):
    async def convert(self, path: Path) -> str: ...


class ImageDescriber(Protocol):
    async def describe(self, path: Path, data: bytes) -> str: ...


class BatchSummarizer(Protocol):
    async def summarize(self, files: Sequence[FileRecord]) -> list[str]: ...


class Deferred:
    """Placeholder result of a heavy transformer, settled during ``flush``."""

    def __init__(self) -> None:
        self._future: asyncio.Future[str | None] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, content: str | None) -> None:
        if not self._future.done():
            self._future.set_result(content)

    def fail(self, error: BaseException) -> None:
        if not self._future.done():
            self._future.set_exception(error)

    def result(self) -> str | None:
        """Return the settled content or raise the settled error.

        Raises:
            TransformError: if the deferred was never settled.
        """
        if not self._future.done():
            raise TransformError(message="Deferred result was not settled by flush()")
        return self._future.result()


class BaseTransformer:
    """Capability interface of a transformer.

    Subclasses set ``name`` and implement ``transform``. ``options`` take part
    in the cache identity, so changing them invalidates cached output.
    """

    name: ClassVar[str] = "base"
    cache_enabled: bool = False
    is_heavy: bool = False

    def __init__(self, options: dict[str, Any] | None = None, *, cache_enabled: bool | None = None) -> None:
        self.options = dict(options or {})
        if cache_enabled is not None:
            self.cache_enabled = cache_enabled

    def can_handle(self, file: FileRecord) -> bool:  # noqa: ARG002
        return True

    async def transform(self, file: FileRecord) -> str | Deferred | None:
        raise NotImplementedError

    async def flush(self) -> None:
        return None

    def cache_identity(self, file: FileRecord) -> str:  # noqa: ARG002
        """Identity under which results are cached, together with the content hash."""
        return f"{self.name}:{json.dumps(self.options, sort_keys=True, default=str)}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _raw_bytes(file: FileRecord) -> bytes:
    if isinstance(file.content, bytes):
        return file.content
    if file.content is not None:
        return file.content.encode("utf-8")
    return file.absolute_path.read_bytes()


class HeadTailTransformer(BaseTransformer):
    """Keep the first and last lines of oversized text files."""

    name = "head-tail"

    def can_handle(self, file: FileRecord) -> bool:
        return not file.is_binary and file.is_too_big

    async def transform(self, file: FileRecord) -> str | None:
        head = int(self.options.get("head", 200))
        tail = int(self.options.get("tail", 80))
        body = take_head_tail(file.text().splitlines(), head=head, tail=tail)
        meta = f"size={file.size} bytes"
        return meta if not body else f"{meta}\n{body}"


class EnvRedactTransformer(BaseTransformer):
    """Keep only variable names of dotenv files."""

    name = "env-redact"

    def can_handle(self, file: FileRecord) -> bool:
        basename = PurePosixPath(file.path).name
        return basename == ".env" or (basename.startswith(".env.") and basename != ".env.example")

    async def transform(self, file: FileRecord) -> str | None:
        return redact_env(file.text())


class PemStubTransformer(BaseTransformer):
    """Replace key and certificate material by its digest and armor lines."""

    name = "pem-stub"

    async def transform(self, file: FileRecord) -> str | None:
        return pem_stub(_raw_bytes(file))


class CsvFirstLinesTransformer(BaseTransformer):
    name = "csv-first-lines"

    async def transform(self, file: FileRecord) -> str | None:
        max_rows = int(self.options.get("max_rows", 10))
        delimiter = "\t" if file.extension == "tsv" else ","
        rows = list(csv.reader(io.StringIO(file.text()), delimiter=delimiter))
        if len(rows) <= max_rows:
            return None
        out = io.StringIO()
        csv.writer(out, delimiter=delimiter, lineterminator="\n").writerows(rows[:max_rows])
        out.write(f"… ({len(rows) - max_rows} more rows)\n")
        return out.getvalue()


class BinaryPlaceholderTransformer(BaseTransformer):
    """Describe binary content that no converter handles."""

    name = "binary-placeholder"

    async def transform(self, file: FileRecord) -> str | None:
        kind = file.binary_name or file.binary_category or "binary"
        return f"[Binary file: {kind}, {file.size} bytes]"


class PandocConverter:
    """Convert documents to plain text with the ``pandoc`` executable."""

    def __init__(self, executable: str = "pandoc", timeout: float = 60.0) -> None:
        self.executable = executable
        self.timeout = timeout

    def available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(self, path: Path) -> str:
        try:
            out = subprocess.run(  # noqa: S603
                [self.executable, str(path), "-t", "plain", "--wrap=none"],
                text=True,
                capture_output=True,
                check=True,
                timeout=self.timeout,
            )
        except FileNotFoundError as e:
            raise TransformError(message=f"{self.executable} is not installed", file=str(path)) from e
        except subprocess.CalledProcessError as e:
            raise TransformError(message=f"{self.executable} failed: {e.stderr.strip()}", file=str(path)) from e
        except subprocess.TimeoutExpired as e:
            raise TransformError(message=f"{self.executable} timed out after {self.timeout}s", file=str(path)) from e
        return out.stdout

    async def convert(self, path: Path) -> str:
        return await asyncio.to_thread(self._run, path)


class DocumentToTextTransformer(BaseTransformer):
    """Route convertible documents (pdf, docx, html...) through a converter."""

    name = "document-to-text"
    cache_enabled = True

    def __init__(self, converter: DocumentConverter | None = None, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(**kwargs)
        self.converter = converter or PandocConverter()

    def can_handle(self, file: FileRecord) -> bool:
        return is_convertible_document(file.binary_category, f".{file.extension}")

    async def transform(self, file: FileRecord) -> str | None:
        if isinstance(self.converter, PandocConverter) and not self.converter.available():
            if file.extension in {"html", "htm"}:
                # markup is still readable without pandoc
                return _raw_bytes(file).decode("utf-8", errors="replace")
            raise TransformError(message="pandoc is not installed", transformer=self.name, file=file.path)
        text = await self.converter.convert(file.absolute_path)
        return text.strip() or None


class ImageDescriptionTransformer(BaseTransformer):
    name = "image-description"
    cache_enabled = True

    def __init__(self, describer: ImageDescriber, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(**kwargs)
        self.describer = describer

    async def transform(self, file: FileRecord) -> str | None:
        description = await self.describer.describe(file.absolute_path, _raw_bytes(file))
        return f"[Image: {description.strip()}]" if description.strip() else None


class BatchSummaryTransformer(BaseTransformer):
    """Summarize files in one batched call made at ``flush`` time."""

    name = "batch-summary"
    cache_enabled = True
    is_heavy = True

    def __init__(self, summarizer: BatchSummarizer, **kwargs: Any) -> None:  # noqa: ANN401
        super().__init__(**kwargs)
        self.summarizer = summarizer
        self.batch_size = int(self.options.get("batch_size", 20))
        self._queue: list[tuple[FileRecord, Deferred]] = []
        self.flush_count = 0

    async def transform(self, file: FileRecord) -> Deferred:
        deferred = Deferred()
        self._queue.append((file, deferred))
        return deferred

    async def flush(self) -> None:
        self.flush_count += 1
        queue, self._queue = self._queue, []
        for start in range(0, len(queue), self.batch_size):
            batch = queue[start : start + self.batch_size]
            try:
                summaries = await self.summarizer.summarize([f for f, _ in batch])
            except Exception as e:  # noqa: BLE001
                logger.warning("batch summary failed", files=len(batch), error=str(e))
                for _, deferred in batch:
                    deferred.fail(TransformError(message=str(e), transformer=self.name))
                continue
            for index, (file, deferred) in enumerate(batch):
                if index < len(summaries):
                    deferred.resolve(summaries[index])
                else:
                    deferred.fail(TransformError(message="no summary returned", transformer=self.name, file=file.path))


@dataclass
class Registration:
    name: str
    transformer: BaseTransformer
    extensions: frozenset[str] = field(default_factory=frozenset)
    mime_types: frozenset[str] = field(default_factory=frozenset)
    categories: frozenset[str] = field(default_factory=frozenset)
    priority: int = 0
    match_capability: bool = False


def _normalize_ext(ext: str) -> str:
    ext = ext.lower()
    return ext if ext.startswith(".") else f".{ext}"


class TransformerRegistry:
    """Capability table mapping files to the transformer that serves them."""

    def __init__(self) -> None:
        self._registrations: dict[str, Registration] = {}
        self.default: str | None = None

    def register(
        self,
        name: str,
        transformer: BaseTransformer,
        *,
        extensions: Iterable[str] = (),
        mime_types: Iterable[str] = (),
        categories: Iterable[str] = (),
        priority: int = 0,
        is_default: bool = False,
        match_capability: bool = False,
    ) -> None:
        if name in self._registrations:
            logger.warning("overwriting transformer", transformer=name)
        self._registrations[name] = Registration(
            name=name,
            transformer=transformer,
            extensions=frozenset(_normalize_ext(e) for e in extensions),
            mime_types=frozenset(mime_types),
            categories=frozenset(categories),
            priority=priority,
            match_capability=match_capability,
        )
        if is_default:
            self.default = name
        logger.debug("registered transformer", transformer=name, priority=priority)

    def get(self, name: str) -> BaseTransformer:
        """Return a transformer by name.

        Raises:
            NoTransformerError: if ``name`` is not registered.
        """
        registration = self._registrations.get(name)
        if registration is None:
            raise NoTransformerError(message=f"Transformer not found: {name}", transformer=name)
        return registration.transformer

    def has(self, name: str) -> bool:
        return name in self._registrations

    def _matches(self, registration: Registration, file: FileRecord) -> bool:
        binary_payload = file.is_binary and isinstance(file.content, bytes)
        if registration.categories and binary_payload and file.binary_category in registration.categories:
            return registration.transformer.can_handle(file)
        if f".{file.extension}" in registration.extensions or file.mime_type in registration.mime_types:
            return registration.transformer.can_handle(file)
        return registration.match_capability and registration.transformer.can_handle(file)

    def get_for_file(self, file: FileRecord) -> BaseTransformer:
        """Return the highest priority transformer serving ``file``.

        Raises:
            NoTransformerError: if no transformer applies and there is no default.
        """
        has_payload = file.content is not None and not file.structure_only and file.error is None
        if has_payload and file.is_binary and not isinstance(file.content, bytes):
            # binary already replaced by a placeholder or comment while loading
            has_payload = False
        if has_payload:
            candidates = [r for r in self._registrations.values() if self._matches(r, file)]
            if candidates:
                best = max(candidates, key=lambda r: r.priority)
                return best.transformer
            if self.default is not None:
                return self.get(self.default)
        raise NoTransformerError(message=f"No transformer found for file: {file.path}", file=file.path)

    def get_all_transformers(self) -> list[BaseTransformer]:
        """Transformers needing an end-of-stage ``flush`` (the heavy ones)."""
        return [r.transformer for r in self._registrations.values() if r.transformer.is_heavy]

    def list(self) -> list[dict[str, Any]]:
        return [
            {
                "name": r.name,
                "priority": r.priority,
                "extensions": sorted(r.extensions),
                "mime_types": sorted(r.mime_types),
                "categories": sorted(r.categories),
                "is_default": self.default == r.name,
                "is_heavy": r.transformer.is_heavy,
                "cache_enabled": r.transformer.cache_enabled,
            }
            for r in self._registrations.values()
        ]

    def clear(self) -> None:
        self._registrations.clear()
        self.default = None

    @classmethod
    def create_default(
        cls,
        settings: Settings,
        *,
        converter: DocumentConverter | None = None,
        describer: ImageDescriber | None = None,
        summarizer: BatchSummarizer | None = None,
        summary_extensions: Iterable[str] = (".py", ".js", ".ts", ".go", ".rs", ".java"),
    ) -> TransformerRegistry:
        """Build a registry with the built-in transformers.

        ``image-description`` and ``batch-summary`` are only registered when
        their collaborator is supplied.
        """

        def options_for(name: str, **defaults: Any) -> dict[str, Any]:  # noqa: ANN401
            configured = settings.transformers.get(name)
            return {**defaults, **(configured.options if configured else {})}

        registry = cls()
        registry.register(
            HeadTailTransformer.name,
            HeadTailTransformer(options_for("head-tail", head=settings.text_head_lines, tail=settings.text_tail_lines)),
            priority=5,
            match_capability=True,
        )
        registry.register(
            EnvRedactTransformer.name,
            EnvRedactTransformer(options_for("env-redact")),
            priority=20,
            match_capability=True,
        )
        registry.register(
            PemStubTransformer.name,
            PemStubTransformer(options_for("pem-stub")),
            extensions=[".pem", ".crt", ".key", ".cer"],
            priority=20,
        )
        registry.register(
            CsvFirstLinesTransformer.name,
            CsvFirstLinesTransformer(options_for("csv-first-lines", max_rows=settings.csv_max_rows)),
            extensions=[".csv", ".tsv"],
            mime_types=["text/csv", "text/tab-separated-values"],
            priority=10,
        )
        registry.register(
            BinaryPlaceholderTransformer.name,
            BinaryPlaceholderTransformer(options_for("binary-placeholder")),
            categories=list(CATEGORIES),
            priority=0,
        )
        registry.register(
            DocumentToTextTransformer.name,
            DocumentToTextTransformer(converter, options=options_for("document-to-text")),
            categories=["document"],
            priority=15,
        )
        if describer is not None:
            registry.register(
                ImageDescriptionTransformer.name,
                ImageDescriptionTransformer(describer, options=options_for("image-description")),
                categories=["image"],
                priority=15,
            )
        if summarizer is not None:
            registry.register(
                BatchSummaryTransformer.name,
                BatchSummaryTransformer(summarizer, options=options_for("batch-summary")),
                extensions=summary_extensions,
                priority=8,
            )
        return registry
