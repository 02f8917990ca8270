from gated_agent.config import ChunkingConfig
from gated_agent.ingest.chunker import SentenceChunker
from gated_agent.types import Document


def test_chunker_splits_on_sentence_punctuation_in_order() -> None:
    chunker = SentenceChunker()
    doc = Document(
        doc_id="doc-1",
        text="Access is reviewed quarterly. Who approves it?  Managers do!\n\n   ",
        metadata={"source": "unit"},
    )

    chunks = chunker.chunk_document(doc)

    assert [c.text for c in chunks] == [
        "Access is reviewed quarterly.",
        "Who approves it?",
        "Managers do!",
    ]
    assert [c.chunk_id for c in chunks] == ["doc-1-chunk-0000", "doc-1-chunk-0001", "doc-1-chunk-0002"]
    assert all(c.doc_id == "doc-1" for c in chunks)
    assert chunks[1].metadata == {"source": "unit", "chunk_index": 1}


def test_chunker_handles_full_width_punctuation_and_blank_fragments() -> None:
    chunker = SentenceChunker()
    doc = Document(doc_id="doc-2", text="第一句。第二句！ ... \n")

    chunks = chunker.chunk_document(doc)

    assert [c.text for c in chunks] == ["第一句。", "第二句！"]


def test_chunker_yields_nothing_for_whitespace_document() -> None:
    assert SentenceChunker().chunk_document(Document(doc_id="empty", text=" \n\t ")) == []


def test_chunker_windows_overlong_sentences() -> None:
    chunker = SentenceChunker(ChunkingConfig(max_chunk_chars=10))
    doc = Document(doc_id="long", text="abcdefghijklmnopqrstuvwxy.")

    chunks = chunker.chunk_document(doc)

    assert [c.text for c in chunks] == ["abcdefghij", "klmnopqrst", "uvwxy."]
    assert all(len(c.text) <= 10 for c in chunks)
