import random

import pytest

from kiln.engine.detokenizer import IncrementalDetokenizer, StopPhraseMatcher, TokenOutputStream


def _ids(tok, *pieces):
    return [tok.token_id(p) for p in pieces]


def _run(detok, ids):
    chunks: list[str] = []
    for tid in ids:
        step = detok.next_token(tid)
        if step.text:
            chunks.append(step.text)
        if step.stopped:
            return chunks, True
    tail = detok.finish()
    if tail:
        chunks.append(tail)
    return chunks, False


def test_no_stop_phrase_reconstructs_full_text(fake_tokenizer):
    ids = fake_tokenizer.encode("The capital of France is Paris.")
    detok = IncrementalDetokenizer(fake_tokenizer)
    chunks, stopped = _run(detok, ids)
    assert not stopped
    assert "".join(chunks) == "The capital of France is Paris."


def test_stop_phrase_spanning_tokens_is_never_emitted(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer, stop_on="</think>")
    detok.prime(fake_tokenizer.encode("ok"))

    ids = _ids(fake_tokenizer, "<", "/think", ">", "done")
    chunks, stopped = _run(detok, ids)

    assert stopped
    assert chunks == []
    assert detok.stop_buffer == ""


def test_text_before_stop_phrase_passes_through(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer, stop_on="</think>")
    ids = _ids(fake_tokenizer, "H", "i", "<", "/think", ">", "done")
    chunks, stopped = _run(detok, ids)
    assert stopped
    assert "".join(chunks) == "Hi"


def test_stop_phrase_match_is_case_insensitive(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer, stop_on="</THINK>")
    ids = _ids(fake_tokenizer, "a", "<", "/think", ">", "done")
    chunks, stopped = _run(detok, ids)
    assert stopped
    assert "".join(chunks) == "a"


def test_disproven_prefix_is_released_verbatim(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer, stop_on="</think>")

    step = detok.next_token(fake_tokenizer.token_id("<"))
    assert step.text == ""
    assert detok.stop_buffer == "<"

    step = detok.next_token(fake_tokenizer.token_id("done"))
    assert step.text == "<done"
    assert not step.stopped
    assert detok.stop_buffer == ""


def test_unmatched_buffer_is_flushed_at_end(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer, stop_on="</think>")
    chunks, stopped = _run(detok, _ids(fake_tokenizer, "x", "<", "/think"))
    assert not stopped
    assert "".join(chunks) == "x</think"


def test_multibyte_character_is_held_until_complete(fake_tokenizer):
    stream = TokenOutputStream(fake_tokenizer)
    assert stream.next_token(fake_tokenizer.token_id(b"\xc3")) is None
    assert stream.pending_tokens == [fake_tokenizer.token_id(b"\xc3")]
    assert stream.next_token(fake_tokenizer.token_id(b"\xa9")) == "é"
    assert stream.pending_tokens == []


def test_incomplete_character_is_flushed_as_replacement(fake_tokenizer):
    detok = IncrementalDetokenizer(fake_tokenizer)
    chunks, _ = _run(detok, _ids(fake_tokenizer, "a", b"\xc3"))
    assert "".join(chunks) == "a\ufffd"


def test_matcher_rejects_empty_phrase():
    with pytest.raises(ValueError):
        StopPhraseMatcher("")


def test_matcher_emits_nothing_after_match():
    m = StopPhraseMatcher("stop")
    assert m.feed("go st") == "go "
    assert m.feed("op and more") == ""
    assert m.matched
    assert m.feed("anything") == ""
    assert m.finish() == ""


def test_matcher_keeps_original_casing():
    m = StopPhraseMatcher("end")
    assert m.feed("Hello World") == "Hello World"
    assert m.feed(" E") == " "
    assert m.buffer == "E"
    assert m.feed("x") == "Ex"


def test_matcher_overlapping_prefix():
    # "aab" must be found even though the first "a" starts a false candidate.
    m = StopPhraseMatcher("aab")
    out = m.feed("xa")
    out += m.feed("a")
    out += m.feed("ab")
    assert m.matched
    assert out == "xa"


@pytest.mark.parametrize("seed", range(25))
def test_randomized_splits_never_leak_stop_phrase(seed):
    rng = random.Random(seed)
    alphabet = "abAB<>/ "
    phrase = "".join(rng.choice(alphabet) for _ in range(rng.randint(1, 4)))
    text = "".join(rng.choice(alphabet) for _ in range(rng.randint(0, 40)))

    m = StopPhraseMatcher(phrase)
    emitted: list[str] = []
    pos = 0
    while pos < len(text) and not m.matched:
        size = rng.randint(1, 5)
        emitted.append(m.feed(text[pos : pos + size]))
        pos += size
        assert len(m.buffer) < len(phrase)
        assert phrase.lower() not in "".join(emitted).lower()
    emitted.append(m.finish())
    out = "".join(emitted)

    idx = text.lower().find(phrase.lower())
    if idx == -1:
        assert out == text
        assert not m.matched
    else:
        assert out == text[:idx]
        assert m.matched


def test_matcher_buffer_stays_a_proper_prefix():
    m = StopPhraseMatcher("</think>")
    for piece in ["ok <", "/thi", "nk", "!", "<", "/think"]:
        m.feed(piece)
        assert len(m.buffer) < len(m.stop_on)
        assert m.stop_on.startswith(m.buffer)
    assert m.feed(">") == ""
    assert m.matched
