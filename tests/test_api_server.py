import tempfile
import unittest
from types import SimpleNamespace
from unittest.mock import patch

import httpx
import openai
from fastapi.testclient import TestClient

from pdfchat import api_server
from pdfchat.client import RagServiceClient
from pdfchat.errors import DocumentTooLarge, TransientUploadFailure, UnsupportedDocumentType
from pdfchat.events import CitationAdded, Completed, Created, StatusUpdate, TextDelta, UsageReported
from pdfchat.metrics import MetricsCollector
from pdfchat.models import RegisteredDocument, TurnRequest
from pdfchat.session import ConversationSession
from pdfchat.stream_decoder import StreamDecoder


def _sdk_events(response_id="resp_1"):
    return [
        SimpleNamespace(type="response.created", response=SimpleNamespace(id=response_id)),
        SimpleNamespace(type="response.file_search_call.in_progress"),
        SimpleNamespace(type="response.output_text.delta", delta="The document "),
        SimpleNamespace(type="response.output_text.delta", delta="discusses X."),
        SimpleNamespace(
            type="response.output_text.annotation.added",
            annotation=SimpleNamespace(type="file_citation", file_id="file-1", filename="doc.pdf"),
        ),
        SimpleNamespace(
            type="response.completed",
            response=SimpleNamespace(
                id=response_id,
                usage=SimpleNamespace(input_tokens=120, output_tokens=8, total_tokens=128),
            ),
        ),
    ]


class _FakeStream:
    """Stands in for openai.AsyncStream: async-iterable with an awaitable close()."""

    def __init__(self, events):
        self._events = list(events)
        self.closed = False

    async def __aiter__(self):
        for event in self._events:
            if self.closed:
                return
            yield event

    async def close(self):
        self.closed = True


class _FakeResponses:
    def __init__(self, events=None, error=None):
        self.calls = []
        self.streams = []
        self._events = events or []
        self._error = error

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self._error is not None:
            raise self._error
        stream = _FakeStream(self._events)
        self.streams.append(stream)
        return stream


class _FakeModels:
    def __init__(self, error=None):
        self._error = error

    async def list(self):
        if self._error is not None:
            raise self._error
        return SimpleNamespace(data=[SimpleNamespace(id="gpt-4o-mini"), SimpleNamespace(id="gpt-4o")])


class _FakeOpenAI:
    def __init__(self, events=None, error=None, models_error=None):
        self.responses = _FakeResponses(events, error)
        self.models = _FakeModels(models_error)


class _FakeRegistrar:
    max_bytes = 1024

    def __init__(self, error=None):
        self.calls = []
        self._error = error

    async def register_document(self, data, name):
        self.calls.append((data, name))
        if self._error is not None:
            raise self._error
        return RegisteredDocument(corpus_handle="vs_new", file_id="file-1", file_name=name, page_count=2)


def _connection_error():
    return openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/responses"))


class _ApiTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.metrics = MetricsCollector(self._tmp.name)
        patcher = patch.object(api_server, "metrics_collector", self.metrics)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.addCleanup(self.metrics.flush)
        self.addCleanup(api_server._state.clear)
        self.client = TestClient(api_server.app)


class TestChatEndpoint(_ApiTestCase):
    def test_streams_frames_the_decoder_understands(self):
        fake = _FakeOpenAI(events=_sdk_events())
        api_server._state["openai"] = fake

        response = self.client.post(
            "/api/chat",
            json={"userText": "What is this about?", "corpusHandle": "vs_1", "continuationToken": "resp_0"},
        )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.headers["content-type"].startswith("text/event-stream"))
        decoder = StreamDecoder()
        events = decoder.feed(response.content) + decoder.flush()
        self.assertEqual(decoder.warnings, [])
        self.assertEqual(
            [type(event) for event in events],
            [Created, StatusUpdate, TextDelta, TextDelta, CitationAdded, UsageReported, Completed],
        )
        self.assertEqual(events[-1].full_text, "The document discusses X.")
        self.assertEqual(events[-1].turn_id, "resp_1")

        call = fake.responses.calls[0]
        self.assertEqual(call["previous_response_id"], "resp_0")
        self.assertEqual(call["tools"], [{"type": "file_search", "vector_store_ids": ["vs_1"]}])
        self.assertTrue(call["stream"])
        self.assertEqual(call["input"][0]["content"][0]["text"], "What is this about?")
        self.assertTrue(fake.responses.streams[0].closed)
        self.assertEqual(self.metrics.get_summary()["throughput"]["total_requests"], 1)

    def test_first_turn_omits_previous_response_id(self):
        fake = _FakeOpenAI(events=_sdk_events())
        api_server._state["openai"] = fake

        self.client.post("/api/chat", json={"userText": "Hi", "corpusHandle": "vs_1"})

        self.assertNotIn("previous_response_id", fake.responses.calls[0])

    def test_upstream_failure_is_reported_in_stream(self):
        api_server._state["openai"] = _FakeOpenAI(error=_connection_error())

        response = self.client.post("/api/chat", json={"userText": "Hi", "corpusHandle": "vs_1"})

        self.assertEqual(response.status_code, 200)
        events = StreamDecoder().feed(response.content)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].message, "Failed to generate response")
        self.assertEqual(self.metrics.get_summary()["errors"]["by_outcome"], {"protocol_error": 1})

    def test_invalid_request_is_rejected(self):
        api_server._state["openai"] = _FakeOpenAI()

        response = self.client.post("/api/chat", json={"userText": "", "corpusHandle": "vs_1"})
        self.assertEqual(response.status_code, 422)
        response = self.client.post("/api/chat", json={"userText": "Hi"})
        self.assertEqual(response.status_code, 422)

    def test_unconfigured_service_returns_503(self):
        response = self.client.post("/api/chat", json={"userText": "Hi", "corpusHandle": "vs_1"})
        self.assertEqual(response.status_code, 503)


class TestUploadEndpoint(_ApiTestCase):
    def _upload(self, content_type="application/pdf"):
        return self.client.post("/api/upload", files={"file": ("paper.pdf", b"%PDF-1.7 body", content_type)})

    def test_upload_returns_camel_case_document(self):
        registrar = _FakeRegistrar()
        api_server._state["registrar"] = registrar

        response = self._upload()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(
            response.json(),
            {"corpusHandle": "vs_new", "fileId": "file-1", "fileName": "paper.pdf", "pageCount": 2},
        )
        self.assertEqual(registrar.calls, [(b"%PDF-1.7 body", "paper.pdf")])

    def test_non_pdf_content_type_is_rejected_before_registration(self):
        registrar = _FakeRegistrar()
        api_server._state["registrar"] = registrar

        response = self._upload(content_type="text/plain")

        self.assertEqual(response.status_code, 415)
        self.assertEqual(registrar.calls, [])

    def test_registration_errors_map_to_status_codes(self):
        cases = [
            (UnsupportedDocumentType("Only PDF files are allowed"), 415),
            (DocumentTooLarge("too big", size_bytes=2048, limit_bytes=1024), 413),
            (TransientUploadFailure("Upload timeout after 30 seconds"), 502),
        ]
        for error, status in cases:
            with self.subTest(status=status):
                api_server._state["registrar"] = _FakeRegistrar(error=error)
                response = self._upload()
                self.assertEqual(response.status_code, status)
                self.assertEqual(response.json()["detail"], error.message)


class TestHealthAndMetrics(_ApiTestCase):
    def test_health_lists_models(self):
        api_server._state["openai"] = _FakeOpenAI()

        response = self.client.get("/api/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body["success"])
        self.assertEqual(body["modelCount"], 2)
        self.assertEqual(body["firstModel"], "gpt-4o-mini")

    def test_health_failure_returns_503(self):
        api_server._state["openai"] = _FakeOpenAI(models_error=_connection_error())
        self.assertEqual(self.client.get("/api/health").status_code, 503)

    def test_metrics_summary(self):
        self.metrics.record_request(12.5, success=True, input_tokens=10, output_tokens=2, model="gpt-4o-mini")

        body = self.client.get("/metrics").json()

        self.assertEqual(body["throughput"]["total_requests"], 1)
        self.assertEqual(body["cost"]["total_input_tokens"], 10)


class TestUpstreamStreamLifecycle(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.metrics = MetricsCollector(self._tmp.name)
        patcher = patch.object(api_server, "metrics_collector", self.metrics)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.addCleanup(self.metrics.flush)

    async def test_client_disconnect_closes_the_upstream_response(self):
        fake = _FakeOpenAI(events=_sdk_events())
        turn = TurnRequest(user_text="Hi", corpus_handle="vs_1")
        frames = api_server._stream_turn(fake, turn)

        received = [await frames.__anext__() for _ in range(3)]
        await frames.aclose()

        self.assertEqual(len(received), 3)
        self.assertTrue(fake.responses.streams[0].closed)
        summary = self.metrics.get_summary()
        self.assertEqual(summary["errors"]["by_outcome"], {"premature_termination": 1})

    async def test_terminal_event_closes_the_upstream_response(self):
        events = _sdk_events() + [SimpleNamespace(type="response.output_text.delta", delta="never relayed")]
        fake = _FakeOpenAI(events=events)
        turn = TurnRequest(user_text="Hi", corpus_handle="vs_1")

        frames = [frame async for frame in api_server._stream_turn(fake, turn)]

        self.assertNotIn("never relayed", "".join(frames))
        self.assertTrue(fake.responses.streams[0].closed)


class TestSessionAgainstRelay(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        metrics = MetricsCollector(self._tmp.name)
        patcher = patch.object(api_server, "metrics_collector", metrics)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self._tmp.cleanup)
        self.addCleanup(metrics.flush)
        self.addCleanup(api_server._state.clear)

    async def test_two_turns_through_http(self):
        fake = _FakeOpenAI(events=_sdk_events("resp_1"))
        api_server._state["openai"] = fake
        http_client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=api_server.app),
            base_url="http://testserver",
        )

        async with RagServiceClient("http://testserver", http_client=http_client) as client:
            session = ConversationSession(client, "vs_1", metrics=None)
            first = await session.send("What is this document about?")
            second = await session.send("Tell me more.")

        self.assertTrue(first.succeeded)
        self.assertEqual(first.message.text, "The document discusses X.")
        self.assertEqual(first.message.citations[0].display_name, "doc.pdf")
        self.assertTrue(second.succeeded)
        self.assertEqual(fake.responses.calls[1]["previous_response_id"], "resp_1")
        self.assertEqual(session.continuation_token, "resp_1")
        self.assertEqual(len(session.transcript), 4)


if __name__ == "__main__":
    unittest.main()
