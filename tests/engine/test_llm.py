import asyncio
import sys

import pytest

from kiln.engine.constraints import ChoiceConstraint, LiteralConstraint
from kiln.engine.errors import (
    EncodingError,
    ForwardPassError,
    ModelStopped,
    NoValidTokens,
    SinkError,
)
from kiln.engine.sampler import GenerationParameters, GreedySampler


def _stream(llm, prompt, **kwargs):
    async def go():
        stream = llm.stream_text(prompt, sampler=kwargs.pop("sampler", GreedySampler()), **kwargs)
        chunks = [chunk async for chunk in stream]
        return chunks, await stream.result()

    return asyncio.run(go())


def test_capital_of_france_streams_and_reconstructs(make_llm):
    llm = make_llm()
    chunks, result = _stream(llm, "The capital of France is", max_tokens=8)
    assert chunks
    assert "".join(chunks) == " Paris."
    assert result.finish_reason == "stop"
    assert result.usage.prompt_tokens == 5
    assert result.usage.completion_tokens == 2
    assert result.timing.total_s >= 0


def test_max_tokens_ends_with_length(make_llm):
    llm = make_llm()
    chunks, result = _stream(llm, "The capital of France is", max_tokens=1)
    assert "".join(chunks) == " Paris"
    assert result.finish_reason == "length"

    chunks, result = _stream(llm, "The capital of France is", max_tokens=0)
    assert chunks == []
    assert result.finish_reason == "length"


def test_stop_phrase_ends_generation_without_emitting_it(make_llm):
    llm = make_llm()
    chunks, result = _stream(llm, "ok", stop_on="</think>")
    assert "".join(chunks) == ""
    assert "done" not in "".join(chunks)
    assert result.finish_reason == "stop_phrase"


def test_stop_phrase_token_is_not_fed_to_the_model(make_llm, make_backend):
    backend = make_backend()
    llm = make_llm(backend)
    session = llm.new_session()

    async def go():
        return await llm.stream_text_with_callback(session, "ok", GreedySampler(), lambda _: None, stop_on="</think>")

    result = asyncio.run(go())
    assert result.finish_reason == "stop_phrase"
    # prompt, "<", "/think"; the token completing the phrase is never evaluated
    assert backend.forward_calls == 3
    assert len(session.tokens) == 4


def test_without_stop_phrase_everything_is_emitted(make_llm):
    llm = make_llm()
    chunks, result = _stream(llm, "ok")
    assert "".join(chunks) == "</think>done"
    assert result.finish_reason == "stop"


def test_sampler_defaults_supply_stop_phrase_and_budget(make_llm):
    llm = make_llm()
    params = GenerationParameters(temperature=0.0, stop_on="</THINK>", max_length=64)
    chunks, result = _stream(llm, "ok", sampler=params)
    assert "".join(chunks) == ""
    assert result.finish_reason == "stop_phrase"


def test_multibyte_output_is_emitted_whole(make_llm):
    llm = make_llm()
    chunks, _ = _stream(llm, "caf")
    assert chunks == ["é"]


def test_session_accumulates_tokens(make_llm):
    llm = make_llm()
    session = llm.new_session()
    chunks: list[str] = []

    async def go():
        await llm.feed_text(session, "The capital of France")
        n = len(session.tokens)
        result = await llm.stream_text_with_callback(session, " is", GreedySampler(), chunks.append)
        return n, result

    fed, result = asyncio.run(go())
    assert fed == 4
    assert "".join(chunks) == " Paris."
    # prompt + every emitted token; the stop token is never fed
    assert len(session.tokens) == fed + 1 + 2
    assert result.usage.prompt_tokens == 1


def test_concurrent_requests_never_interleave(make_llm, make_backend):
    backend = make_backend(delay=0.005)
    llm = make_llm(backend)
    events: list[tuple[str, str]] = []

    async def one(tag, prompt):
        return await llm.stream_text_with_callback(
            llm.new_session(),
            prompt,
            GreedySampler(),
            lambda text: events.append((tag, text)),
        )

    async def go():
        return await asyncio.gather(one("a", "The capital of France is"), one("b", "ok"))

    results = asyncio.run(go())
    assert [r.finish_reason for r in results] == ["stop", "stop"]

    tags = [tag for tag, _ in events]
    first = tags[0]
    switch = tags.index("b" if first == "a" else "a")
    assert all(t == first for t in tags[:switch])
    assert all(t != first for t in tags[switch:])
    assert backend.max_in_flight == 1


def test_cancellation_stops_within_one_step(make_llm, make_backend):
    backend = make_backend(delay=0.01)
    llm = make_llm(backend)

    async def go():
        stream = llm.stream_text("z", sampler=GreedySampler())
        seen = []
        async for chunk in stream:
            seen.append(chunk)
            if len(seen) == 3:
                break
        calls_at_cancel = backend.forward_calls
        await stream.aclose()
        result = await stream.result()
        return seen, calls_at_cancel, result

    seen, calls_at_cancel, result = asyncio.run(go())
    assert seen == ["z", "z", "z"]
    assert result.finish_reason == "cancelled"
    assert backend.forward_calls - calls_at_cancel <= 1


def test_cancelling_awaiting_task_abandons_request(make_llm, make_backend):
    backend = make_backend(delay=0.01)
    llm = make_llm(backend)

    async def go():
        task = asyncio.create_task(
            llm.stream_text_with_callback(llm.new_session(), "z", GreedySampler(), lambda _: None)
        )
        await asyncio.sleep(0.1)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        calls = backend.forward_calls
        # The dispatcher must be free again for the next request.
        return calls, await llm.run_sync(lambda model: "ok")

    calls, value = asyncio.run(go())
    assert value == "ok"
    assert backend.forward_calls - calls <= 1


def test_sink_error_aborts_request(make_llm):
    llm = make_llm()

    def sink(text):
        raise OSError("client went away")

    async def go():
        return await llm.stream_text_with_callback(llm.new_session(), "The capital of France is", GreedySampler(), sink)

    with pytest.raises(SinkError) as excinfo:
        asyncio.run(go())
    assert isinstance(excinfo.value.__cause__, OSError)

    chunks, result = _stream(llm, "The capital of France is")
    assert "".join(chunks) == " Paris."


def test_failing_task_does_not_stop_dispatcher(make_llm):
    llm = make_llm()

    def boom(model):
        raise KeyError("broken task")

    async def go():
        with pytest.raises(KeyError):
            await llm.run_sync(boom)
        return await llm.run_sync(lambda model: model.stop_token_id)

    assert asyncio.run(go()) == 0


def test_system_exit_in_task_does_not_stop_dispatcher(make_llm):
    llm = make_llm()

    async def go():
        with pytest.raises(SystemExit):
            await llm.run_sync(lambda model: sys.exit(3))
        return await llm.run_sync(lambda model: "ok")

    assert asyncio.run(go()) == "ok"
    assert not llm.stopped


def test_dead_dispatcher_rejects_new_work(make_backend):
    from kiln.engine.dispatcher import Dispatcher, StructuredGenerationTask
    from kiln.engine.model import LocalModel

    dispatcher = Dispatcher(LocalModel(make_backend()))
    dispatcher.close()
    dispatcher._closed = False
    assert not dispatcher.is_alive()
    with pytest.raises(ModelStopped):
        dispatcher.submit(StructuredGenerationTask(lambda model: None, completion=None))


def test_forward_pass_failure_is_reported(make_llm, make_backend):
    llm = make_llm(make_backend(fail_on_call=2))
    chunks: list[str] = []

    async def go():
        return await llm.stream_text_with_callback(
            llm.new_session(), "The capital of France is", GreedySampler(), chunks.append
        )

    with pytest.raises(ForwardPassError):
        asyncio.run(go())
    # the chunk for the token sampled before the failing step was already delivered
    assert chunks == [" Paris"]

    chunks, _ = _stream(llm, "The capital of France is")
    assert "".join(chunks) == " Paris."


def test_unencodable_prompt_raises_encoding_error(make_llm):
    llm = make_llm()
    with pytest.raises(EncodingError):
        _stream(llm, "€")
    with pytest.raises(EncodingError):
        _stream(llm, "")


def test_prompt_length_limit(make_llm):
    llm = make_llm(max_prompt_tokens=3)
    with pytest.raises(EncodingError):
        _stream(llm, "The capital of France is")


def test_constrained_generation_returns_parsed_output(make_llm):
    llm = make_llm()
    tok = llm.backend.tokenizer
    chunks: list[str] = []

    async def go():
        return await llm.stream_text_with_callback_and_constraints(
            llm.new_session(),
            "The capital of France is",
            GreedySampler(),
            ChoiceConstraint([" Paris", " London"], tok),
            chunks.append,
        )

    out = asyncio.run(go())
    assert out.complete
    assert out.value == " Paris"
    assert out.text == " Paris"
    assert "".join(chunks) == " Paris"
    assert out.result.finish_reason == "stop"


def test_choice_that_prefixes_another_ends_on_stop_token(make_llm, make_backend):
    backend = make_backend(transitions={b" is": b" Paris", b" Paris": b"</s>"})
    llm = make_llm(backend)

    async def go():
        return await llm.stream_text_with_callback_and_constraints(
            llm.new_session(),
            "The capital of France is",
            GreedySampler(),
            ChoiceConstraint([" Paris", " Paris, France"], backend.tokenizer),
            lambda _: None,
        )

    out = asyncio.run(go())
    assert out.complete
    assert out.value == " Paris"
    assert out.result.finish_reason == "stop"


def test_constraint_without_valid_tokens_fails(make_llm):
    llm = make_llm()

    async def go():
        return await llm.stream_text_with_callback_and_constraints(
            llm.new_session(),
            "ok",
            GreedySampler(),
            LiteralConstraint("€", llm.backend.tokenizer),
            lambda _: None,
        )

    with pytest.raises(NoValidTokens):
        asyncio.run(go())


def test_incomplete_constrained_output_has_no_value(make_llm):
    llm = make_llm()

    async def go():
        return await llm.stream_text_with_callback_and_constraints(
            llm.new_session(),
            "The capital of France is",
            GreedySampler(),
            LiteralConstraint(" Paris, France", llm.backend.tokenizer),
            lambda _: None,
            max_tokens=2,
        )

    out = asyncio.run(go())
    assert not out.complete
    assert out.value is None
    assert out.result.finish_reason == "length"


def test_shutdown_rejects_new_work(make_llm):
    llm = make_llm()
    llm.shutdown()
    assert llm.backend.unloaded
    assert llm.stopped

    async def go():
        await llm.run_sync(lambda model: None)

    with pytest.raises(ModelStopped):
        asyncio.run(go())


def test_from_pretrained_uses_registry(make_backend):
    from kiln.engine.llm import LLM
    from kiln.engine.registry import list_backend_families, register_backend

    register_backend("fake", make_backend)
    assert "fake" in list_backend_families()
    llm = LLM.from_pretrained("some/model", family="fake")
    try:
        assert llm.backend.loaded_from == "some/model"
    finally:
        llm.shutdown()

    with pytest.raises(ValueError):
        LLM.from_pretrained("some/model", family="missing")
