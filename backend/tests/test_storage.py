import threading

import pytest

from app.prepare.models import (
    ComputedBy,
    Evaluation,
    GeneratedBy,
    InputMethod,
    InterviewStage,
    Question,
    Response,
    Session,
    StarScores,
)
from app.prepare.scorer import heuristic_evaluate
from app.prepare.storage import InMemoryPrepareStore, JsonFilePrepareStore, build_prepare_store


def _session() -> Session:
    return Session(owner_id="user-1", job_position="Analyst", interview_stage=InterviewStage.PHONE_SCREENING)


def _question(session_id: str, seq: int) -> Question:
    return Question(
        session_id=session_id,
        sequence_number=seq,
        text=f"Question {seq}",
        category="general",
        difficulty="intermediate",
        generated_by=GeneratedBy.FALLBACK_TEMPLATE,
    )


def _response(session_id: str, question_id: str, text: str) -> Response:
    return Response(
        session_id=session_id,
        question_id=question_id,
        text=text,
        input_method=InputMethod.TEXT,
        word_count=len(text.split()),
    )


@pytest.mark.asyncio
async def test_returned_sessions_are_copies():
    store = InMemoryPrepareStore()
    session = await store.create_session(_session())

    loaded = await store.get_session(session.id)
    loaded.questions_asked = 9

    assert (await store.get_session(session.id)).questions_asked == 0
    assert await store.get_session("missing") is None


@pytest.mark.asyncio
async def test_question_sequence_must_be_contiguous():
    store = InMemoryPrepareStore()
    session = await store.create_session(_session())
    await store.create_question(_question(session.id, 1))

    with pytest.raises(ValueError):
        await store.create_question(_question(session.id, 3))
    assert [q.sequence_number for q in await store.list_questions(session.id)] == [1]


@pytest.mark.asyncio
async def test_latest_response_wins_until_evaluated():
    store = InMemoryPrepareStore()
    session = await store.create_session(_session())
    question = await store.create_question(_question(session.id, 1))

    await store.create_response(_response(session.id, question.id, "first draft"))
    latest = await store.create_response(_response(session.id, question.id, "second draft"))
    assert (await store.get_response(question.id)).text == "second draft"

    evaluation = Evaluation.from_result(heuristic_evaluate(latest.text), latest)
    stored = await store.create_evaluation(evaluation)
    assert stored is evaluation

    with pytest.raises(ValueError):
        await store.create_response(_response(session.id, question.id, "too late"))


@pytest.mark.asyncio
async def test_evaluations_are_immutable_once_stored():
    store = InMemoryPrepareStore()
    session = await store.create_session(_session())
    question = await store.create_question(_question(session.id, 1))
    response = await store.create_response(_response(session.id, question.id, "answer"))

    first = await store.create_evaluation(Evaluation.from_result(heuristic_evaluate("answer"), response))
    replacement = Evaluation(
        response_id=response.id,
        question_id=question.id,
        session_id=session.id,
        star_scores=StarScores(5.0, 5.0, 5.0, 5.0, 5.0),
        strengths=(),
        improvements=(),
        suggestions=(),
        model_answer="",
        overall_rating="Pass",
        computed_by=ComputedBy.AI,
    )

    assert await store.create_evaluation(replacement) is first
    assert await store.list_evaluations(session.id) == [first]


@pytest.mark.asyncio
async def test_json_store_survives_reload(tmp_path):
    path = tmp_path / "prepare" / "store.json"
    store = JsonFilePrepareStore(path)
    session = await store.create_session(_session())
    question = await store.create_question(_question(session.id, 1))
    response = await store.create_response(_response(session.id, question.id, "We shipped it."))
    evaluation = await store.create_evaluation(Evaluation.from_result(heuristic_evaluate(response.text), response))

    reloaded = JsonFilePrepareStore(path)

    assert (await reloaded.get_session(session.id)).to_dict() == session.to_dict()
    assert await reloaded.list_questions(session.id) == [question]
    assert await reloaded.get_response(question.id) == response
    assert await reloaded.list_evaluations(session.id) == [evaluation]


def test_build_prepare_store_kinds(tmp_path):
    assert isinstance(build_prepare_store("memory"), InMemoryPrepareStore)
    assert isinstance(build_prepare_store("JSON", str(tmp_path / "s.json")), JsonFilePrepareStore)
    with pytest.raises(RuntimeError):
        build_prepare_store("json")
    with pytest.raises(RuntimeError):
        build_prepare_store("redis")


@pytest.mark.asyncio
async def test_json_store_writes_file_off_the_event_loop(tmp_path, monkeypatch):
    path = tmp_path / "store.json"
    store = JsonFilePrepareStore(path)
    loop_thread = threading.get_ident()
    writer_threads: list[int] = []
    original = store._write_file

    def _recording_write(text: str) -> None:
        writer_threads.append(threading.get_ident())
        original(text)

    monkeypatch.setattr(store, "_write_file", _recording_write)

    session = await store.create_session(_session())
    await store.update_session(session)

    assert len(writer_threads) == 2
    assert all(ident != loop_thread for ident in writer_threads)
    assert not path.with_suffix(".tmp").exists()
    assert (await JsonFilePrepareStore(path).get_session(session.id)).id == session.id
