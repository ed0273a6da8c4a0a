from genny.engine.backends.huggingface import _GeneratorParams, _TokenizerStream, banned_ngram_tokens

import pytest


class _ByteTokenizer:
    """Tokens map to raw UTF-8 bytes, so one character can span two tokens."""

    VOCAB = {
        1: b"h",
        2: b"i",
        3: "é".encode("utf-8")[:1],
        4: "é".encode("utf-8")[1:],
        5: b" ",
    }

    def decode(self, ids, skip_special_tokens: bool = False) -> str:
        return b"".join(self.VOCAB[int(t)] for t in ids).decode("utf-8", errors="replace")


def test_stream_emits_each_token_text() -> None:
    stream = _TokenizerStream(_ByteTokenizer())
    assert [stream.decode(t) for t in (1, 2, 5, 1)] == ["h", "i", " ", "h"]


def test_stream_holds_back_partial_character() -> None:
    stream = _TokenizerStream(_ByteTokenizer())
    assert stream.decode(1) == "h"
    assert stream.decode(3) == ""
    assert stream.decode(4) == "é"
    assert stream.decode(2) == "i"


def test_flush_returns_trailing_partial_character() -> None:
    stream = _TokenizerStream(_ByteTokenizer())
    assert stream.decode(1) == "h"
    assert stream.decode(3) == ""
    assert stream.flush() == "\ufffd"
    assert stream.flush() == ""


def test_flush_is_empty_when_nothing_is_held() -> None:
    stream = _TokenizerStream(_ByteTokenizer())
    assert stream.flush() == ""
    stream.decode(1)
    stream.decode(2)
    assert stream.flush() == ""


def test_banned_ngrams() -> None:
    # Seen bigrams: (1, 2), (2, 3), (3, 1). The sequence ends in 1, so 2 is banned.
    assert banned_ngram_tokens([1, 2, 3, 1], 2) == {2}
    assert banned_ngram_tokens([1, 2, 3, 1, 2], 3) == {3}
    assert banned_ngram_tokens([1, 2, 3], 0) == set()
    assert banned_ngram_tokens([1], 2) == set()


def test_params_reject_unknown_option() -> None:
    params = _GeneratorParams()
    params.set_search_option("top_k", 3)
    assert params.search_options["top_k"] == 3
    with pytest.raises(ValueError):
        params.set_search_option("beam_width", 4)


def test_params_accept_single_batch_only() -> None:
    params = _GeneratorParams()
    params.set_input_sequences([[1, 2, 3]])
    assert params.input_ids == [1, 2, 3]
    params.set_input_sequences([4, 5])
    assert params.input_ids == [4, 5]
    with pytest.raises(ValueError):
        params.set_input_sequences([[1], [2]])
