"""Corpus loading: parsers for heterogeneous inputs and a directory loader."""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from gated_agent.types import Document

logger = logging.getLogger(__name__)


class Parser(ABC):
    """Base parser interface used by the corpus loader."""

    extensions: tuple[str, ...] = ()

    @abstractmethod
    def parse(self, path: Path, *, doc_id: str | None = None) -> Document:
        """Parse a file into normalized text + metadata."""


class TextParser(Parser):
    extensions = (".txt", ".md", ".markdown")

    def parse(self, path: Path, *, doc_id: str | None = None) -> Document:
        return Document(
            doc_id=doc_id or path.stem,
            text=path.read_text(encoding="utf-8"),
            metadata={"source": str(path)},
        )


class JsonParser(Parser):
    """Parser for JSON documents with deterministic normalization."""

    extensions = (".json",)

    def parse(self, path: Path, *, doc_id: str | None = None) -> Document:
        payload: Any = json.loads(path.read_text(encoding="utf-8"))
        if isinstance(payload, dict) and isinstance(payload.get("text"), str):
            text = payload["text"]
        elif isinstance(payload, (dict, list)):
            text = json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2)
        else:
            text = str(payload)
        return Document(doc_id=doc_id or path.stem, text=text, metadata={"source": str(path)})


class ParserRegistry:
    """Maps file extension to parser implementation."""

    def __init__(self, parsers: list[Parser] | None = None) -> None:
        self._parsers: dict[str, Parser] = {}
        for parser in parsers or [TextParser(), JsonParser()]:
            self.register(parser)

    def register(self, parser: Parser) -> None:
        for extension in parser.extensions:
            self._parsers[extension.lower()] = parser

    def supports(self, path: Path) -> bool:
        return path.suffix.lower() in self._parsers

    def parse_path(self, path: str | Path, *, doc_id: str | None = None) -> Document:
        file_path = Path(path)
        parser = self._parsers.get(file_path.suffix.lower())
        if parser is None:
            raise ValueError(f"No parser registered for extension: {file_path.suffix}")
        return parser.parse(file_path, doc_id=doc_id)


def load_documents(
    directory: str | Path, parser_registry: ParserRegistry | None = None
) -> list[Document]:
    """Read every supported file directly under `directory`, sorted by name."""

    root = Path(directory)
    if not root.is_dir():
        logger.warning("Corpus directory not found: %s", root)
        return []

    registry = parser_registry or ParserRegistry()
    documents = [
        registry.parse_path(path)
        for path in sorted(root.iterdir())
        if path.is_file() and registry.supports(path)
    ]
    logger.info("Loaded %d documents from %s", len(documents), root)
    return documents
