"""
Tests for the chunking service and composite chunk IDs.

USAGE:
------
pytest tests/test_chunking.py
"""

import unittest

from worknote_rag.services.chunking import (
    ChunkingService,
    generate_chunk_id,
    parse_chunk_id,
    work_id_from_chunk_id,
    estimate_token_count,
    build_note_text,
    WORK_SCOPE,
)


SAMPLE_TEXT = (
    "Met with the platform team about the deployment pipeline. "
    "The staging cluster keeps running out of disk during image builds. "
    "We agreed to move the build cache to a dedicated volume.\n\n"
    "Action items: Anna checks the volume quotas. Marco drafts the migration plan "
    "for the cache. I follow up with security about the new service account. "
    "Next sync is on Thursday, when we review the numbers from the first week."
)


class TestChunkText(unittest.TestCase):
    """Splitting behaviour of ChunkingService.chunk_text"""

    def setUp(self):
        self.chunker = ChunkingService(max_chunk_chars=100)

    def test_empty_and_whitespace_text_yield_no_chunks(self):
        self.assertEqual(self.chunker.chunk_text(""), [])
        self.assertEqual(self.chunker.chunk_text("   \n\n\t "), [])

    def test_short_text_is_a_single_chunk(self):
        self.assertEqual(self.chunker.chunk_text("Short note."), ["Short note."])

    def test_chunks_respect_max_size(self):
        chunks = self.chunker.chunk_text(SAMPLE_TEXT)
        self.assertGreater(len(chunks), 1)
        for chunk in chunks:
            self.assertLessEqual(len(chunk), 100)
            self.assertTrue(chunk.strip())

    def test_chunks_are_contiguous_and_non_overlapping(self):
        chunks = self.chunker.chunk_text(SAMPLE_TEXT)
        self.assertEqual("".join(chunks), SAMPLE_TEXT)

    def test_paragraph_break_preferred(self):
        text = "A" * 60 + "\n\n" + "B" * 60
        chunks = self.chunker.chunk_text(text)
        self.assertEqual(chunks, ["A" * 60 + "\n\n", "B" * 60])

    def test_hard_cut_without_separator(self):
        chunks = self.chunker.chunk_text("x" * 250)
        self.assertEqual([len(c) for c in chunks], [100, 100, 50])

    def test_separator_in_first_half_is_ignored(self):
        text = "ab " + "c" * 200
        chunks = self.chunker.chunk_text(text)
        self.assertEqual(len(chunks[0]), 100)
        self.assertEqual("".join(chunks), text)

    def test_deterministic(self):
        self.assertEqual(self.chunker.chunk_text(SAMPLE_TEXT), self.chunker.chunk_text(SAMPLE_TEXT))
        self.assertEqual(self.chunker.count_chunks(SAMPLE_TEXT), len(self.chunker.chunk_text(SAMPLE_TEXT)))

    def test_invalid_max_chunk_chars(self):
        with self.assertRaises(ValueError):
            ChunkingService(max_chunk_chars=-1)


class TestChunkWorkNote(unittest.TestCase):
    """Per-chunk metadata and note text layout"""

    def test_note_text_is_title_then_content(self):
        self.assertEqual(build_note_text("Title", "Body"), "Title\n\nBody")

    def test_metadata_attached_to_every_chunk(self):
        chunker = ChunkingService(max_chunk_chars=100)
        chunks = chunker.chunk_work_note("WORK-1", "Platform sync", SAMPLE_TEXT, metadata={"category": "meeting"})

        self.assertGreater(len(chunks), 1)
        self.assertTrue(chunks[0].text.startswith("Platform sync\n\n"))
        for index, chunk in enumerate(chunks):
            self.assertEqual(chunk.chunk_index, index)
            self.assertEqual(chunk.chunk_id, f"WORK-1#chunk{index}")
            self.assertEqual(chunk.metadata["work_id"], "WORK-1")
            self.assertEqual(chunk.metadata["scope"], WORK_SCOPE)
            self.assertEqual(chunk.metadata["chunk_index"], index)
            self.assertEqual(chunk.metadata["category"], "meeting")

    def test_default_size_is_512_tokens(self):
        chunker = ChunkingService()
        self.assertEqual(chunker.max_chunk_chars, 2048)
        self.assertEqual(chunker.count_chunks("w " * 1500), 2)


class TestChunkIds(unittest.TestCase):
    """Composite chunk ID format"""

    def test_generate_and_parse(self):
        chunk_id = generate_chunk_id("WORK-1", 12)
        self.assertEqual(chunk_id, "WORK-1#chunk12")
        self.assertEqual(parse_chunk_id(chunk_id), ("WORK-1", 12))

    def test_parse_rejects_malformed_ids(self):
        for bad in ["WORK-1", "WORK-1#chunk", "WORK-1#chunkX", "#chunk1"]:
            with self.assertRaises(ValueError):
                parse_chunk_id(bad)

    def test_work_id_from_chunk_id(self):
        self.assertEqual(work_id_from_chunk_id("WORK-abc#chunk3"), "WORK-abc")
        self.assertEqual(work_id_from_chunk_id("WORK-abc"), "WORK-abc")

    def test_estimate_token_count(self):
        self.assertEqual(estimate_token_count(""), 0)
        self.assertEqual(estimate_token_count("abcd"), 1)
        self.assertEqual(estimate_token_count("abcde"), 2)


if __name__ == "__main__":
    unittest.main()
