import asyncio
import base64

import pytest

from app.prepare.gateway import RealtimeGateway
from app.prepare.models import InputMethod, SessionStatus


class _Client:
    def __init__(self):
        self.received: list[dict] = []

    async def send(self, payload: dict) -> None:
        self.received.append(payload)

    def types(self) -> list[str]:
        return [p["type"] for p in self.received]

    def last(self, event_type: str) -> dict:
        return [p for p in self.received if p["type"] == event_type][-1]


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


@pytest.fixture
def gateway_factory(make_engine, fake_transcriber_factory):
    def _make(transcript: str = "I led the rollout and cut costs by 30%.", **engine_kwargs):
        engine, _ = make_engine(**engine_kwargs)
        transcriber = fake_transcriber_factory(transcript=transcript)
        return RealtimeGateway(engine, transcriber), transcriber

    return _make


async def _authenticated(gateway: RealtimeGateway, user_id: str = "user-1"):
    client = _Client()
    connection = await gateway.connect(client.send)
    await gateway.handle_message(connection, {"type": "authenticate", "userId": user_id})
    return client, connection


async def _joined_session(gateway: RealtimeGateway, session_config: dict):
    client, connection = await _authenticated(gateway)
    await gateway.handle_message(connection, {"type": "create-session", "config": session_config})
    session_id = client.last("session-created")["session"]["id"]
    await gateway.handle_message(connection, {"type": "join-session", "sessionId": session_id})
    await gateway.wait_idle()
    return client, connection, session_id


@pytest.mark.asyncio
async def test_unauthenticated_requests_are_rejected_but_connection_stays_usable(gateway_factory):
    gateway, _ = gateway_factory()
    client = _Client()
    connection = await gateway.connect(client.send)

    await gateway.handle_message(connection, {"type": "create-session", "config": {}})
    assert client.received[-1]["type"] == "error"
    assert client.received[-1]["kind"] == "unauthenticated"

    await gateway.handle_message(connection, {"type": "teleport"})
    assert client.received[-1]["kind"] == "unauthenticated"
    assert client.received[-1]["requestType"] == "teleport"

    await gateway.handle_message(connection, {"type": "authenticate", "userId": "user-1"})
    assert client.received[-1] == {"type": "authenticated", "userId": "user-1"}


@pytest.mark.asyncio
async def test_text_answer_flow(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)

    joined = client.last("session-joined")
    assert joined["session"]["status"] == "idle"
    assert joined["currentQuestion"] is None

    question = client.last("question-generated")
    await gateway.handle_message(
        connection,
        {"type": "submit-text-response", "questionId": question["questionId"], "text": "We reduced downtime by 40%."},
    )
    await gateway.wait_idle()

    assert client.types() == [
        "authenticated",
        "session-created",
        "session-joined",
        "question-generated",
        "response-evaluated",
        "question-generated",
    ]
    evaluated = client.last("response-evaluated")
    assert evaluated["nextQuestion"]["questionId"] == client.last("question-generated")["questionId"]
    assert (await gateway.engine.get_session(session_id)).questions_asked == 1


@pytest.mark.asyncio
async def test_voice_answer_flow_with_out_of_order_chunks(gateway_factory, session_config):
    gateway, transcriber = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)
    question_id = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": question_id})
    for index, raw in [(2, b"CC"), (0, b"AA"), (1, b"BB")]:
        await gateway.handle_message(
            connection,
            {"type": "voice-chunk", "questionId": question_id, "index": index, "bytes": _b64(raw), "isLast": index == 2},
        )
    assert client.last("voice-chunk-received")["receivedCount"] == 3

    await gateway.handle_message(connection, {"type": "voice-end", "questionId": question_id})
    await gateway.wait_idle()

    assert transcriber.calls == [(b"AABBCC", "en")]
    tail = client.types()[-3:]
    assert tail == ["transcription-complete", "response-evaluated", "question-generated"]
    assert client.last("transcription-complete")["transcript"] == transcriber.transcript

    response = await gateway.engine.store.get_response(question_id)
    assert response.input_method == InputMethod.VOICE
    assert response.text == transcriber.transcript
    assert gateway.transcript_buffer.get(session_id) is None


@pytest.mark.asyncio
async def test_voice_end_with_missing_chunk_reports_incomplete_stream(gateway_factory, session_config):
    gateway, transcriber = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)
    question_id = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": question_id})
    await gateway.handle_message(connection, {"type": "voice-chunk", "questionId": question_id, "index": 0, "bytes": _b64(b"A")})
    await gateway.handle_message(
        connection,
        {"type": "voice-chunk", "questionId": question_id, "index": 2, "bytes": _b64(b"C"), "isLast": True},
    )
    await gateway.handle_message(connection, {"type": "voice-end", "questionId": question_id})
    await gateway.wait_idle()

    error = client.received[-1]
    assert error["type"] == "error"
    assert error["kind"] == "incomplete-stream"
    assert error["requestType"] == "voice-end"
    assert error["details"]["missing_indices"] == [1]
    assert transcriber.calls == []

    current = await gateway.engine.get_session(session_id)
    assert current.status == SessionStatus.ACTIVE
    assert current.current_question_id == question_id


@pytest.mark.asyncio
async def test_transcription_failure_leaves_question_open(gateway_factory, session_config):
    gateway, transcriber = gateway_factory(transcript="")
    client, connection, session_id = await _joined_session(gateway, session_config)
    question_id = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": question_id})
    await gateway.handle_message(
        connection,
        {"type": "voice-chunk", "questionId": question_id, "index": 0, "bytes": _b64(b"..."), "isLast": True},
    )
    await gateway.handle_message(connection, {"type": "voice-end", "questionId": question_id})
    await gateway.wait_idle()

    assert client.received[-1]["kind"] == "transcription-failed"
    assert (await gateway.engine.get_session(session_id)).current_question_id == question_id


@pytest.mark.asyncio
async def test_join_rejects_other_users_session(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    _, _, session_id = await _joined_session(gateway, session_config)

    intruder, connection = await _authenticated(gateway, user_id="user-2")
    await gateway.handle_message(connection, {"type": "join-session", "sessionId": session_id})

    assert intruder.received[-1]["type"] == "error"
    assert intruder.received[-1]["kind"] == "unauthorized"
    assert connection.session_id is None


@pytest.mark.asyncio
async def test_bad_messages_get_error_replies(gateway_factory):
    gateway, _ = gateway_factory()
    client, connection = await _authenticated(gateway)

    await gateway.handle_message(connection, ["not", "an", "object"])
    assert client.received[-1]["kind"] == "invalid-message"

    await gateway.handle_message(connection, {"type": "teleport"})
    assert client.received[-1]["kind"] == "unknown-message"

    await gateway.handle_message(connection, {"type": "join-session"})
    assert client.received[-1]["kind"] == "invalid-message"

    await gateway.handle_message(connection, {"type": "join-session", "sessionId": "missing"})
    assert client.received[-1]["kind"] == "session-not-found"

    await gateway.handle_message(connection, {"type": "ping"})
    assert client.received[-1]["type"] == "pong"


@pytest.mark.asyncio
async def test_stale_submission_is_rejected(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    client, connection, _ = await _joined_session(gateway, session_config)

    await gateway.handle_message(
        connection,
        {"type": "submit-text-response", "questionId": "old-question", "text": "late answer"},
    )
    await gateway.wait_idle()
    assert client.received[-1]["kind"] == "stale-question"
    assert client.received[-1]["requestType"] == "submit-text-response"


@pytest.mark.asyncio
async def test_pause_resume_and_end_are_broadcast(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)
    first_question = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "pause-session"})
    await gateway.wait_idle()
    assert client.last("session-paused")["session"]["status"] == "paused"

    await gateway.handle_message(connection, {"type": "resume-session"})
    await gateway.wait_idle()
    represented = client.last("question-generated")
    assert represented["questionId"] == first_question
    assert represented["represented"] is True

    await gateway.handle_message(connection, {"type": "end-session"})
    await gateway.wait_idle()
    completed = client.last("session-completed")
    assert completed["reason"] == "ended-by-user"
    assert (await gateway.engine.get_session(session_id)).status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_events_fan_out_to_every_joined_connection(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    first, first_conn, session_id = await _joined_session(gateway, session_config)

    second = _Client()
    second_conn = await gateway.connect(second.send)
    await gateway.handle_message(second_conn, {"type": "authenticate", "userId": "user-1"})
    await gateway.handle_message(second_conn, {"type": "join-session", "sessionId": session_id})
    assert second.last("session-joined")["currentQuestion"] is not None

    question_id = first.last("question-generated")["questionId"]
    await gateway.handle_message(first_conn, {"type": "submit-text-response", "questionId": question_id, "text": "An answer."})
    await gateway.wait_idle()

    assert second.types()[-2:] == ["response-evaluated", "question-generated"]
    assert second.last("question-generated") == first.last("question-generated")

    await gateway.handle_message(second_conn, {"type": "leave-session"})
    assert second.received[-1] == {"type": "session-left", "sessionId": session_id}


@pytest.mark.asyncio
async def test_disconnect_discards_in_progress_voice_turn(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)
    question_id = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": question_id})
    assert gateway.transcript_buffer.get(session_id) is not None

    await gateway.disconnect(connection)

    assert gateway.transcript_buffer.get(session_id) is None
    assert (await gateway.engine.get_session(session_id)).status == SessionStatus.ACTIVE


@pytest.mark.asyncio
async def test_text_answer_abandons_open_voice_turn(gateway_factory, session_config):
    gateway, transcriber = gateway_factory()
    client, connection, session_id = await _joined_session(gateway, session_config)
    first_question = client.last("question-generated")["questionId"]

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": first_question})
    await gateway.handle_message(
        connection,
        {"type": "voice-chunk", "questionId": first_question, "index": 0, "bytes": _b64(b"AA")},
    )
    await gateway.handle_message(
        connection,
        {"type": "submit-text-response", "questionId": first_question, "text": "Typed it instead."},
    )
    await gateway.wait_idle()

    assert gateway.transcript_buffer.get(session_id) is None
    second_question = client.last("question-generated")["questionId"]
    assert second_question != first_question

    await gateway.handle_message(connection, {"type": "voice-start", "questionId": second_question})
    assert client.received[-1] == {"type": "voice-started", "sessionId": session_id, "questionId": second_question}
    assert transcriber.calls == []


@pytest.mark.asyncio
async def test_last_member_leaving_releases_session_outbox(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    _, connection, session_id = await _joined_session(gateway, session_config)
    outbox = gateway._outboxes[session_id]

    await gateway.disconnect(connection)
    gateway.cleanup(0)

    assert session_id not in gateway._outboxes
    await asyncio.wait_for(asyncio.gather(outbox.task, return_exceptions=True), timeout=1)
    assert outbox.task.done()


@pytest.mark.asyncio
async def test_events_for_unjoined_session_do_not_keep_an_outbox(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    client, connection = await _authenticated(gateway)
    await gateway.handle_message(connection, {"type": "create-session", "config": session_config})
    session_id = client.last("session-created")["session"]["id"]

    await gateway.engine.activate(session_id)
    await gateway.wait_idle()

    assert session_id not in gateway._outboxes
    assert "question-generated" not in client.types()


@pytest.mark.asyncio
async def test_gateway_cleanup_drops_abandoned_session_runtime(gateway_factory, session_config):
    gateway, _ = gateway_factory()
    _, connection, session_id = await _joined_session(gateway, session_config)
    await gateway.disconnect(connection)

    runtime = gateway.engine.registry.get(session_id)
    assert runtime is not None and runtime.active
    assert gateway.cleanup(60, idle_ttl_sec=60)["runtimes_removed"] == 0

    runtime.updated_at -= 3600
    removed = gateway.cleanup(60, idle_ttl_sec=60)

    assert removed["runtimes_removed"] == 1
    assert gateway.engine.registry.get(session_id) is None
