from ragsync.core.token_utils import estimate_tokens
from ragsync.services.chunking import ChunkConfig, chunk_config_for, chunk_text, split_into_windows


def _paragraph(tag: str, words: int) -> str:
    return " ".join(f"{tag}w{index}" for index in range(words))


def test_short_text_is_a_single_chunk():
    assert chunk_text("ticket", "Customer cannot log in.\n\nReset link sent.") == [
        "Customer cannot log in.\n\nReset link sent."
    ]


def test_empty_text_produces_no_chunks():
    assert chunk_text("ticket", "") == []
    assert chunk_text("email", "  \n\n \t ") == []


def test_structured_records_stay_whole():
    body = "\n\n".join(_paragraph(f"line{n}", 150) for n in range(4))

    chunks = chunk_text("qbo_invoice", body)

    assert chunks == [body]


def test_paragraphs_are_packed_with_overlap_from_previous_chunk():
    body = "\n\n".join(_paragraph(tag, 200) for tag in ("a", "b", "c"))

    chunks = chunk_text("ticket", body)

    assert len(chunks) == 3
    assert chunks[0] == _paragraph("a", 200)
    for previous, current in zip(chunks, chunks[1:]):
        assert current.split()[:40] == previous.split()[-40:]
    assert chunks[2].endswith(_paragraph("c", 200))


def test_every_input_word_lands_in_some_chunk():
    body = "\n\n".join(_paragraph(f"p{n}", 90 + n * 17) for n in range(9))

    chunks = chunk_text("interaction", body)

    covered = {word for chunk in chunks for word in chunk.split()}
    assert covered == set(body.split())


def test_oversized_paragraph_is_split_into_overlapping_windows():
    body = _paragraph("x", 5000)

    chunks = chunk_text("ticket", body, ChunkConfig(max_tokens=500, overlap_tokens=50))

    assert 11 <= len(chunks) <= 14
    assert all(estimate_tokens(chunk) <= 650 for chunk in chunks)
    assert chunks[1].split()[:50] == chunks[0].split()[-50:]
    assert chunks[-1].split()[-1] == "xw4999"


def test_split_into_windows_clamps_overlap():
    words = [str(n) for n in range(5)]

    assert split_into_windows(words, 2, 5) == ["0 1", "1 2", "2 3", "3 4"]
    assert split_into_windows(words, 10, 2) == ["0 1 2 3 4"]


def test_chunk_config_per_source_type():
    assert chunk_config_for("ticket") == ChunkConfig(380, 40)
    assert chunk_config_for("email") == ChunkConfig(360, 40)
    assert chunk_config_for("shopify_order").max_tokens == 240
    assert chunk_config_for("something_new") == chunk_config_for("ticket")
