"""
Tests for push.py
FCM fan-out: recipient resolution, batching, message shape and /notify-batch.
"""
from unittest.mock import Mock

import pytest

import push  # noqa: E402
from conftest import batch_response, seed_user  # noqa: E402


@pytest.fixture
def send_each(monkeypatch):
    """Replace messaging.send_each; every message succeeds by default"""
    mock = Mock(side_effect=lambda batch: batch_response(len(batch)))
    monkeypatch.setattr(push.messaging, "send_each", mock)
    return mock


def sent_messages(mock):
    return [m for call in mock.call_args_list for m in call.args[0]]


class TestHelpers:
    """Test link and payload helpers"""

    def test_project_link_encodes_name(self):
        assert push.project_link("p1", "Alpha Team") == "/view/p1/Alpha%20Team"
        assert push.project_link("p1", None) == "/view/p1/Project"

    def test_absolute_link(self):
        assert push.absolute_link("/view/p1/Alpha", "https://app.example.com/") == "https://app.example.com/view/p1/Alpha"
        assert push.absolute_link("https://x.test/a", "https://app.example.com") == "https://x.test/a"

    def test_stringify_data_drops_none(self):
        out = push.stringify_data({"a": 1, "b": None, "c": {"k": "v"}, "d": True})
        assert out == {"a": "1", "c": '{"k": "v"}', "d": "True"}

    def test_task_body(self):
        assert push.task_body("Casey", "Write report") == "Casey created: Write report"
        assert push.task_body(None, "Write report") == "Someone created: Write report"

    def test_chunked(self):
        assert [len(c) for c in push.chunked(list(range(1201)))] == [500, 500, 201]


class TestBuildMessage:
    """Test FCM message construction"""

    def test_https_link_sets_fcm_options(self):
        msg = push.build_message("tok", "Title", "Body", {"link": "https://app.example.com/view/p1/Alpha"})
        assert msg.token == "tok"
        assert msg.notification.title == "Title"
        assert msg.webpush.fcm_options.link == "https://app.example.com/view/p1/Alpha"
        assert msg.webpush.notification.require_interaction is True

    def test_relative_link_skips_fcm_options(self):
        msg = push.build_message("tok", "Title", "Body", {"link": "/view/p1/Alpha"})
        assert msg.webpush.fcm_options is None
        assert msg.data["link"] == "/view/p1/Alpha"


class TestSendBatch:
    """Test send_batch and send_messages"""

    def test_dedupes_and_strips_tokens(self, send_each):
        result = push.send_batch(["a", " a ", "b", "", None], "T", "B")
        assert result == {"success": True, "notified": 2, "failed": 0, "total": 2}
        assert sorted(m.token for m in sent_messages(send_each)) == ["a", "b"]

    def test_no_tokens_sends_nothing(self, send_each):
        assert push.send_batch([], "T", "B")["total"] == 0
        send_each.assert_not_called()

    def test_splits_into_batches_of_500(self, send_each):
        tokens = [f"tok-{i}" for i in range(1001)]
        result = push.send_batch(tokens, "T", "B")
        assert [len(c.args[0]) for c in send_each.call_args_list] == [500, 500, 1]
        assert result["notified"] == 1001

    def test_partial_failures_counted(self, monkeypatch):
        monkeypatch.setattr(push.messaging, "send_each", Mock(return_value=batch_response(1, 2)))
        result = push.send_batch(["a", "b", "c"], "T", "B")
        assert result["notified"] == 1
        assert result["failed"] == 2

    def test_failed_chunk_counts_every_message(self, monkeypatch):
        monkeypatch.setattr(push.messaging, "send_each", Mock(side_effect=RuntimeError("quota")))
        result = push.send_batch(["a", "b"], "T", "B")
        assert result == {"success": True, "notified": 0, "failed": 2, "total": 2}

    def test_title_and_body_copied_into_data(self, send_each):
        push.send_batch(["a"], "Hello", "World", {"projectId": "p1"})
        msg = sent_messages(send_each)[0]
        assert msg.data == {"projectId": "p1", "title": "Hello", "body": "World"}

    def test_link_made_absolute_from_origin(self, send_each):
        push.send_batch(["a"], "T", "B", {"link": "/view/p1/Alpha", "origin": "https://app.example.com"})
        msg = sent_messages(send_each)[0]
        assert msg.data["link"] == "https://app.example.com/view/p1/Alpha"
        assert msg.webpush.fcm_options.link == "https://app.example.com/view/p1/Alpha"


class TestDispatchTaskCreated:
    """Test recipient resolution and the task_created push"""

    def test_resolve_recipients(self, fake_db):
        seed_user(fake_db, "creator", token="tok-creator")
        seed_user(fake_db, "u2", token="tok-u2")
        seed_user(fake_db, "u3")
        seed_user(fake_db, "outsider", token="tok-out")
        targets = push.resolve_recipients(["creator", "u2", "u3"], "creator")
        assert targets == [{"uid": "u2", "fcmToken": "tok-u2"}]

    def test_dispatch_payload(self, fake_db, send_each):
        seed_user(fake_db, "u2", token="tok-u2")
        result = push.dispatch_task_created(
            "p1", ["creator", "u2"], "t1", "Write report", "creator",
            creator_email="creator@example.com", creator_name="Casey", project_name="Alpha",
            origin="https://app.example.com",
        )
        assert result["notified"] == 1
        msg = sent_messages(send_each)[0]
        assert msg.token == "tok-u2"
        assert msg.notification.title == "New Task Created"
        assert msg.notification.body == "Casey created: Write report"
        assert msg.data["type"] == "task_created"
        assert msg.data["taskId"] == "t1"
        assert msg.data["link"] == "https://app.example.com/view/p1/Alpha"

    def test_only_creator_assigned(self, fake_db, send_each):
        seed_user(fake_db, "creator", token="tok-creator")
        result = push.dispatch_task_created("p1", ["creator"], "t1", "Task", "creator")
        assert result == {"success": True, "notified": 0, "failed": 0, "total": 0}
        send_each.assert_not_called()


class TestNotifyBatchRoute:
    """Test POST /api/notify-batch"""

    def test_sends(self, client, send_each):
        resp = client.post("/api/notify-batch", json={"tokens": ["a", "b"], "title": "Hi", "body": "There"})
        assert resp.status_code == 200
        assert resp.get_json() == {"success": True, "notified": 2, "failed": 0}

    @pytest.mark.parametrize("body", [
        {"title": "Hi"},
        {"tokens": [], "title": "Hi"},
        {"tokens": "abc", "title": "Hi"},
        {"tokens": ["a"], "title": "   "},
        {"tokens": ["a"], "title": "Hi", "data": ["x"]},
    ])
    def test_rejects_bad_input(self, client, send_each, body):
        resp = client.post("/api/notify-batch", json=body)
        assert resp.status_code == 400
        assert resp.get_json()["success"] is False
        send_each.assert_not_called()

    def test_unexpected_error_returns_500(self, client, monkeypatch):
        monkeypatch.setattr(push, "send_batch", Mock(side_effect=RuntimeError("boom")))
        resp = client.post("/api/notify-batch", json={"tokens": ["a"], "title": "Hi"})
        assert resp.status_code == 500
        assert resp.get_json() == {"success": False, "error": "boom"}
