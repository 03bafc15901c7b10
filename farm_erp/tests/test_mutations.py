import pytest

from farm_erp.client.api import ApiError
from farm_erp.client.mutations import Mutation, MutationBusy, MutationState, PostForm


class _Recorder:
    def __init__(self):
        self.notes = []
        self.refetches = 0

    def notify(self, level, message):
        self.notes.append((level, message))

    def refetch(self):
        self.refetches += 1


def test_success_refetches_then_notifies():
    rec = _Recorder()
    m = Mutation(lambda x: {"id": x}, refetch=[rec.refetch], notify=rec.notify, success_message="posted")
    assert m.run("p1") == {"id": "p1"}
    assert m.state is MutationState.IDLE
    assert rec.refetches == 1
    assert rec.notes == [("success", "posted")]


def test_error_notifies_with_server_message_and_returns_to_idle():
    rec = _Recorder()

    def boom():
        raise ApiError(409, "only DRAFT payments can be posted")

    m = Mutation(boom, refetch=[rec.refetch], notify=rec.notify)
    with pytest.raises(ApiError):
        m.run()
    assert m.state is MutationState.IDLE
    assert m.last_error == "only DRAFT payments can be posted"
    assert rec.refetches == 0
    assert rec.notes == [("error", "only DRAFT payments can be posted")]


def test_second_run_while_submitting_is_refused():
    rec = _Recorder()
    holder = {}

    def reenter():
        with pytest.raises(MutationBusy):
            holder["m"].run()
        return "ok"

    holder["m"] = Mutation(reenter, notify=rec.notify)
    assert holder["m"].run() == "ok"


def test_post_form_reuses_key_across_retries():
    sent = []
    attempts = {"n": 0}

    def post(body):
        sent.append(body["idempotency_key"])
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise ApiError(0, "connection reset")
        return {"posting_group_id": "pg-1"}

    form = PostForm(post, notify=lambda *_: None)
    with pytest.raises(ApiError):
        form.submit({"posting_date": "2026-01-31"})
    assert form.submit({"posting_date": "2026-01-31"}) == {"posting_group_id": "pg-1"}
    assert sent[0] == sent[1] == form.idempotency_key


def test_new_form_gets_new_key():
    a = PostForm(lambda body: body, notify=lambda *_: None)
    b = PostForm(lambda body: body, notify=lambda *_: None)
    assert a.idempotency_key != b.idempotency_key
