from datetime import datetime, timedelta, timezone

import pytest

from jobflow.errors import ApiError, InvalidTransition, StaleStateError, ValidationError
from jobflow.lifecycle import ALLOWED_TRANSITIONS
from jobflow.store import store

COMPANY = {"user_id": "company_1", "role": "company"}
WORKER = {"user_id": "worker_1", "role": "worker"}
OTHER_WORKER = {"user_id": "worker_2", "role": "worker"}
ADMIN = {"user_id": "admin_1", "role": "admin"}

DESCRIPTION = "Completed the landing page redesign with responsive layout"


def _deadline(days: int = 2) -> str:
    return (datetime.now(timezone.utc) + timedelta(days=days)).isoformat()


def _notifications_for(user_id: str) -> list[dict]:
    return store.get_notifications(user_id=user_id, limit=100)


def test_happy_path_reaches_completed_and_notifies_each_side(make_job, apply_for):
    job = make_job("posted")
    job_id = job["id"]

    application = apply_for(job_id)

    assigned = store.transition_job(
        job_id=job_id,
        action="assign",
        actor=COMPANY,
        payload={"application_id": application["id"]},
    )
    assert assigned["status"] == "assigned"
    assert assigned["worker_id"] == "worker_1"
    assert assigned["assigned_date"] is not None

    started = store.transition_job(job_id=job_id, action="start", actor=WORKER)
    assert started["status"] == "in-progress"

    submitted = store.transition_job(job_id=job_id, action="submit", actor=WORKER, payload={"description": DESCRIPTION})
    assert submitted["status"] == "submitted"

    completed = store.transition_job(job_id=job_id, action="approve", actor=COMPANY)
    assert completed["status"] == "completed"
    assert completed["completed_date"] is not None

    worker_actions = [x["metadata"]["action"] for x in _notifications_for("worker_1")]
    company_actions = [x["metadata"]["action"] for x in _notifications_for("company_1")]
    assert sorted(worker_actions) == ["approved", "assigned"]
    assert sorted(company_actions) == ["applied", "started", "submitted"]

    history = store.get_submission(job_id=job_id, actor=COMPANY)
    assert history["current"]["status"] == "approved"
    assert history["current"]["reviewed_at"] is not None


def test_revision_then_resubmit_then_approve(make_job):
    job = make_job("submitted")
    job_id = job["id"]
    first_submission = store.get_submission(job_id=job_id, actor=COMPANY)["current"]

    revised = store.transition_job(
        job_id=job_id,
        action="request_revision",
        actor=COMPANY,
        payload={"feedback": "Please use the brand colors", "new_deadline": _deadline()},
    )
    assert revised["status"] == "revision-requested"
    assert revised["revision_count"] == 1

    notification = _notifications_for("worker_1")[0]
    assert notification["title"] == "Revision requested"
    assert notification["message"] == "Please use the brand colors"
    assert notification["metadata"]["action"] == "revision_requested"
    assert notification["metadata"]["revision_count"] == 1
    assert notification["metadata"]["new_deadline"] == revised["deadline"]

    store.transition_job(
        job_id=job_id,
        action="submit",
        actor=WORKER,
        payload={"description": DESCRIPTION + " using the brand palette"},
    )
    resubmitted = _notifications_for("company_1")[0]
    assert resubmitted["metadata"]["action"] == "resubmitted"

    history = store.get_submission(job_id=job_id, actor=WORKER)
    assert len(history["submissions"]) == 2
    assert history["submissions"][0]["submission_id"] == first_submission["submission_id"]
    assert history["submissions"][0]["status"] == "rejected"
    assert history["current"]["status"] == "pending"
    assert history["current"]["revision_index"] == 1

    completed = store.transition_job(job_id=job_id, action="approve", actor=COMPANY)
    assert completed["status"] == "completed"
    assert completed["revision_count"] == 1


def test_revision_count_matches_recorded_revision_requests(make_job):
    job = make_job("submitted")
    job_id = job["id"]
    for round_no in range(1, 4):
        revised = store.transition_job(
            job_id=job_id,
            action="request_revision",
            actor=COMPANY,
            payload={"feedback": f"Round {round_no} changes", "new_deadline": _deadline(round_no + 1)},
        )
        history = store.get_submission(job_id=job_id, actor=COMPANY)
        assert revised["revision_count"] == round_no
        assert history["revision_count"] == len(history["revision_requests"]) == round_no
        store.transition_job(
            job_id=job_id,
            action="submit",
            actor=WORKER,
            payload={"description": f"{DESCRIPTION}, round {round_no}"},
        )


def test_approve_in_progress_job_is_rejected(make_job):
    job = make_job("in-progress")

    with pytest.raises(InvalidTransition) as exc:
        store.transition_job(job_id=job["id"], action="approve", actor=COMPANY)

    assert exc.value.code == "JOB_TRANSITION_INVALID"
    assert exc.value.http_status == 409
    assert exc.value.current_status == "in-progress"
    assert store.get_job(job_id=job["id"], actor=COMPANY)["status"] == "in-progress"
    assert [x["metadata"]["action"] for x in _notifications_for("worker_1")] == ["assigned"]


def test_completed_is_only_reachable_from_submitted():
    reachable_from = {source for source, targets in ALLOWED_TRANSITIONS.items() if "completed" in targets}
    assert reachable_from == {"submitted"}
    assert ALLOWED_TRANSITIONS["completed"] == set()
    assert ALLOWED_TRANSITIONS["cancelled"] == set()
    assert store.ALLOWED_TRANSITIONS is ALLOWED_TRANSITIONS


def test_worker_cannot_approve_own_submission(make_job):
    job = make_job("submitted")

    with pytest.raises(ApiError) as exc:
        store.transition_job(job_id=job["id"], action="approve", actor=WORKER)

    assert exc.value.code == "ACTOR_FORBIDDEN"
    assert exc.value.http_status == 403


def test_only_assigned_worker_may_start(make_job):
    job = make_job("assigned")

    with pytest.raises(ApiError) as exc:
        store.transition_job(job_id=job["id"], action="start", actor=OTHER_WORKER)

    assert exc.value.code == "ACTOR_FORBIDDEN"


def test_other_company_cannot_assign(make_job):
    job = make_job("posted")

    with pytest.raises(ApiError) as exc:
        store.transition_job(
            job_id=job["id"],
            action="assign",
            actor={"user_id": "company_2", "role": "company"},
            payload={"application_id": "app_missing"},
        )

    assert exc.value.code == "ACTOR_FORBIDDEN"


def test_admin_cannot_drive_transitions(make_job):
    job = make_job("submitted")

    with pytest.raises(ApiError) as exc:
        store.transition_job(job_id=job["id"], action="approve", actor=ADMIN)

    assert exc.value.code == "ACTOR_FORBIDDEN"


def test_unknown_action_is_a_validation_error(make_job):
    job = make_job("posted")

    with pytest.raises(ValidationError) as exc:
        store.transition_job(job_id=job["id"], action="cancel", actor=COMPANY)

    assert exc.value.code == "JOB_ACTION_UNKNOWN"


def test_missing_job_returns_not_found():
    with pytest.raises(ApiError) as exc:
        store.transition_job(job_id="job_missing", action="start", actor=WORKER)

    assert exc.value.code == "JOB_NOT_FOUND"
    assert exc.value.http_status == 404


def test_assign_requires_an_application(make_job):
    job = make_job("posted")

    with pytest.raises(ValidationError) as exc:
        store.transition_job(job_id=job["id"], action="assign", actor=COMPANY, payload={})

    assert exc.value.code == "APPLICATION_REQUIRED"
    assert exc.value.field == "application_id"
    assert store.get_job(job_id=job["id"], actor=COMPANY)["status"] == "posted"


def test_retried_transition_is_applied_once(make_job):
    job = make_job("in-progress")
    payload = {"description": DESCRIPTION}

    first = store.transition_job(job_id=job["id"], action="submit", actor=WORKER, payload=payload)
    second = store.transition_job(job_id=job["id"], action="submit", actor=WORKER, payload=payload)

    assert first == second
    history = store.get_submission(job_id=job["id"], actor=WORKER)
    assert len(history["submissions"]) == 1
    submitted_notifications = [
        x for x in _notifications_for("company_1") if x["metadata"]["action"] == "submitted"
    ]
    assert len(submitted_notifications) == 1


def test_different_payload_after_transition_is_invalid(make_job):
    job = make_job("in-progress")
    store.transition_job(job_id=job["id"], action="submit", actor=WORKER, payload={"description": DESCRIPTION})

    with pytest.raises(InvalidTransition):
        store.transition_job(
            job_id=job["id"],
            action="submit",
            actor=WORKER,
            payload={"description": DESCRIPTION + " again"},
        )


def test_stale_expected_status_carries_latest_job(make_job):
    job = make_job("submitted")
    store.transition_job(job_id=job["id"], action="approve", actor=COMPANY)

    with pytest.raises(StaleStateError) as exc:
        store.transition_job(
            job_id=job["id"],
            action="request_revision",
            actor=COMPANY,
            payload={"feedback": "Too late", "new_deadline": _deadline()},
            expected_status="submitted",
        )

    assert exc.value.code == "JOB_STATE_STALE"
    assert exc.value.actual_status == "completed"
    assert exc.value.latest["id"] == job["id"]
    assert exc.value.latest["status"] == "completed"


def test_assigned_date_is_set_once(make_job):
    job = make_job("assigned")
    first_assigned = job["assigned_date"]

    # A second assign is not a legal move; the date must survive the attempt.
    with pytest.raises(InvalidTransition):
        store.transition_job(job_id=job["id"], action="assign", actor=COMPANY, payload={"application_id": "app_other"})

    progressed = store.transition_job(job_id=job["id"], action="start", actor=WORKER)
    assert progressed["assigned_date"] == first_assigned


def test_rejected_submission_leaves_no_trace(make_job):
    job = make_job("in-progress")
    before = len(_notifications_for("company_1"))
    pending_events = len(store.outbox.list_events())

    with pytest.raises(ValidationError) as exc:
        store.transition_job(job_id=job["id"], action="submit", actor=WORKER, payload={"description": "too short"})

    assert exc.value.code == "SUBMISSION_DESCRIPTION_TOO_SHORT"
    assert store.get_job(job_id=job["id"], actor=WORKER)["status"] == "in-progress"
    assert store.get_submission(job_id=job["id"], actor=WORKER)["submissions"] == []
    assert len(_notifications_for("company_1")) == before
    assert len(store.outbox.list_events()) == pending_events


def test_revision_with_past_deadline_is_rejected(make_job):
    job = make_job("submitted")

    with pytest.raises(ValidationError) as exc:
        store.transition_job(
            job_id=job["id"],
            action="request_revision",
            actor=COMPANY,
            payload={"feedback": "Fix the header", "new_deadline": _deadline(-1)},
        )

    assert exc.value.code == "REVISION_DEADLINE_IN_PAST"
    current = store.get_job(job_id=job["id"], actor=COMPANY)
    assert current["status"] == "submitted"
    assert current["revision_count"] == 0


def test_each_transition_writes_one_outbox_event(make_job, apply_for):
    job = make_job("posted")
    application = apply_for(job["id"])
    store.transition_job(
        job_id=job["id"],
        action="assign",
        actor=COMPANY,
        payload={"application_id": application["id"]},
    )

    events = [x for x in store.outbox.list_events() if x["aggregate_id"] == job["id"]]
    assert [x["event_type"] for x in events] == ["application.create", "job.assign"]
    assert all(x["status"] == "published" for x in events)
    delivery = events[1]["deliveries"][0]
    assert delivery["channel"] == "user:worker_1"
    assert delivery["event"] == "new_notification"


def test_private_job_is_hidden_from_strangers(make_job):
    job = make_job("assigned")

    with pytest.raises(ApiError) as exc:
        store.get_job(job_id=job["id"], actor=OTHER_WORKER)
    assert exc.value.code == "JOB_NOT_FOUND"

    assert store.get_job(job_id=job["id"], actor=ADMIN)["status"] == "assigned"
    assert store.get_job(job_id=job["id"], actor=WORKER)["status"] == "assigned"


def test_only_companies_post_jobs():
    with pytest.raises(ApiError) as exc:
        store.create_job(actor=WORKER, payload={"title": "Not allowed"})
    assert exc.value.code == "ACTOR_FORBIDDEN"

    with pytest.raises(ValidationError):
        store.create_job(actor=COMPANY, payload={"title": "   "})


def test_illegal_move_is_reported_before_the_actor_check(make_job):
    job = make_job("posted")

    with pytest.raises(InvalidTransition) as exc:
        store.transition_job(job_id=job["id"], action="start", actor=WORKER)
    assert exc.value.current_status == "posted"

    with pytest.raises(InvalidTransition):
        store.transition_job(job_id=job["id"], action="approve", actor=OTHER_WORKER)

    with pytest.raises(StaleStateError):
        store.transition_job(job_id=job["id"], action="start", actor=OTHER_WORKER, expected_status="assigned")
