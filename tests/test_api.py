"""
Tests for the exam HTTP API.
"""
import pytest

from errors import QuestionNotFound


def _start(client, headers, **body):
    payload = {
        "certification": "CLF-C01",
        "exam_type": "MOCK",
        "question_ids": ["q1", "q2", "q3"],
        "time_limit": 10,
    }
    payload.update(body)
    return client.post("/api/sessions", json=payload, headers=headers)


class TestStartSession:
    def test_start_explicit_exam(self, client, auth_headers):
        response = _start(client, auth_headers)

        assert response.status_code == 201
        data = response.get_json()
        assert data["status"] == "IN_PROGRESS"
        assert data["questions"][0]["id"] == "q1"
        assert [q["id"] for q in data["questions"]] == ["q1", "q2", "q3"]
        assert data["remaining_seconds"] == 600
        assert data["expired"] is False

    def test_mock_exam_hides_answers(self, client, auth_headers):
        data = _start(client, auth_headers).get_json()
        for question in data["questions"]:
            assert "correct" not in question
            assert "explanation" not in question

    def test_practice_exam_includes_answers(self, client, auth_headers):
        data = _start(client, auth_headers, exam_type="PRACTICE").get_json()
        assert data["questions"][1]["correct"] == [0, 2]

    def test_assembled_practice_exam(self, client, auth_headers):
        response = client.post(
            "/api/sessions",
            json={"certification": "CLF-C01", "exam_type": "PRACTICE"},
            headers=auth_headers,
        )
        assert response.status_code == 201
        data = response.get_json()
        assert sorted(data["questions"], key=lambda q: q["id"])[0]["id"] == "q1"
        assert len(data["questions"]) == 3
        assert data["time_limit"] == 60

    def test_requires_user(self, client):
        response = _start(client, {})
        assert response.status_code == 401
        assert response.get_json()["code"] == "AuthenticationRequired"

    def test_unknown_question(self, client, auth_headers):
        response = _start(client, auth_headers, question_ids=["q1", "nope"])
        assert response.status_code == 404
        assert response.get_json()["code"] == "QuestionNotFound"

    @pytest.mark.parametrize("time_limit", [0, -1, None])
    def test_invalid_time_limit(self, client, auth_headers, time_limit):
        response = _start(client, auth_headers, time_limit=time_limit)
        assert response.status_code == 400
        assert response.get_json()["code"] == "InvalidConfiguration"

    def test_unknown_exam_type(self, client, auth_headers):
        response = _start(client, auth_headers, exam_type="FINAL")
        assert response.status_code == 400

    def test_questions_from_another_certification(self, client, auth_headers):
        response = _start(client, auth_headers, certification="SAA-C03")
        assert response.status_code == 400
        assert response.get_json()["code"] == "InvalidConfiguration"

    def test_mock_exam_keeps_template_time_limit(self, client, auth_headers):
        response = client.post(
            "/api/sessions",
            json={"certification": "CLF-C01", "exam_type": "MOCK", "time_limit": 5},
            headers=auth_headers,
        )
        assert response.status_code == 400
        assert response.get_json()["code"] == "InvalidConfiguration"


class TestExamFlow:
    def test_answer_review_and_submit(self, client, auth_headers, clock):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        base = f"/api/sessions/{session_id}"

        response = client.patch(f"{base}/answers", json={"question_id": "q1", "selected": [1]},
                                headers=auth_headers)
        assert response.status_code == 200
        assert response.get_json()["answers"] == {"q1": [1]}

        client.patch(f"{base}/answers", json={"question_id": "q2", "selected": [2, 0]},
                     headers=auth_headers)
        response = client.patch(f"{base}/review", json={"question_id": "q3", "marked": True},
                                headers=auth_headers)
        assert response.get_json()["marked_for_review"] == ["q3"]

        clock.advance(minutes=4, seconds=30)
        response = client.post(f"{base}/submit", headers=auth_headers)

        assert response.status_code == 200
        data = response.get_json()
        assert data["session"]["status"] == "COMPLETED"
        result = data["result"]
        assert result["correct_answers"] == 2
        assert result["total_questions"] == 3
        assert result["time_spent"] == 4
        assert result["passing_score"] == 700
        assert result["scaled_score"] == 100
        assert result["passed"] is False
        assert [r["is_correct"] for r in data["responses"]] == [True, True, False]

    def test_submit_is_idempotent(self, client, auth_headers, clock):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        first = client.post(f"/api/sessions/{session_id}/submit", headers=auth_headers).get_json()
        clock.advance(minutes=2)
        second = client.post(f"/api/sessions/{session_id}/submit", headers=auth_headers).get_json()

        assert second["result"] == first["result"]
        listed = client.get("/api/results", headers=auth_headers).get_json()
        assert len(listed) == 1

    def test_changes_rejected_after_submit(self, client, auth_headers):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        client.post(f"/api/sessions/{session_id}/submit", headers=auth_headers)

        response = client.patch(f"/api/sessions/{session_id}/answers",
                                json={"question_id": "q1", "selected": [1]}, headers=auth_headers)
        assert response.status_code == 409
        assert response.get_json()["code"] == "SessionTerminal"

    def test_answer_after_deadline_submits_automatically(self, client, auth_headers, clock):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        client.patch(f"/api/sessions/{session_id}/answers",
                     json={"question_id": "q1", "selected": [1]}, headers=auth_headers)
        clock.advance(minutes=11)

        response = client.patch(f"/api/sessions/{session_id}/answers",
                                json={"question_id": "q2", "selected": [0, 2]}, headers=auth_headers)
        assert response.status_code == 409
        assert response.get_json()["code"] == "SessionExpired"

        results = client.get("/api/results", headers=auth_headers).get_json()
        assert len(results) == 1
        assert results[0]["expired"] is True
        assert results[0]["correct_answers"] == 1
        assert results[0]["time_spent"] == 10

        session = client.get(f"/api/sessions/{session_id}", headers=auth_headers).get_json()
        assert session["status"] == "EXPIRED"
        assert session["remaining_seconds"] == 0

    def test_expired_answer_reports_expiry_when_scoring_fails(
            self, app, client, auth_headers, clock, monkeypatch, caplog):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        clock.advance(minutes=11)

        def missing(question_ids):
            raise QuestionNotFound(question_ids)

        monkeypatch.setattr(app.extensions["exam"].questions, "get_questions", missing)
        response = client.patch(f"/api/sessions/{session_id}/answers",
                                json={"question_id": "q1", "selected": [1]}, headers=auth_headers)

        assert response.status_code == 409
        assert response.get_json()["code"] == "SessionExpired"
        assert "Could not score expired exam" in caplog.text
        assert client.get("/api/results", headers=auth_headers).get_json() == []

    def test_remaining_time_and_expired_flag(self, client, auth_headers, clock):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        clock.advance(minutes=3)
        data = client.get(f"/api/sessions/{session_id}", headers=auth_headers).get_json()
        assert data["remaining_seconds"] == 420
        assert data["expired"] is False

        clock.advance(minutes=7)
        data = client.get(f"/api/sessions/{session_id}", headers=auth_headers).get_json()
        assert data["remaining_seconds"] == 0
        assert data["expired"] is True

    def test_question_outside_exam(self, client, auth_headers):
        session_id = _start(client, auth_headers, question_ids=["q1"]).get_json()["session_id"]
        response = client.patch(f"/api/sessions/{session_id}/answers",
                                json={"question_id": "q2", "selected": [0]}, headers=auth_headers)
        assert response.status_code == 400
        assert response.get_json()["code"] == "QuestionNotInSession"

    def test_other_users_cannot_see_session(self, client, auth_headers):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        response = client.get(f"/api/sessions/{session_id}", headers={"X-User-Id": "intruder"})
        assert response.status_code == 404

    def test_unknown_session(self, client, auth_headers):
        response = client.post("/api/sessions/missing/submit", headers=auth_headers)
        assert response.status_code == 404
        assert response.get_json()["code"] == "SessionNotFound"


class TestResults:
    def test_get_result(self, client, auth_headers):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        result = client.post(f"/api/sessions/{session_id}/submit",
                             headers=auth_headers).get_json()["result"]

        response = client.get(f"/api/results/{result['result_id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.get_json() == result

        other = client.get(f"/api/results/{result['result_id']}", headers={"X-User-Id": "someone"})
        assert other.status_code == 404
        assert other.get_json()["code"] == "ResultNotFound"

    def test_unknown_result(self, client, auth_headers):
        response = client.get("/api/results/missing", headers=auth_headers)
        assert response.status_code == 404
        assert response.get_json() == {
            "error": "Exam result not found: missing",
            "code": "ResultNotFound",
            "retryable": False,
        }

    def test_stats(self, client, auth_headers):
        session_id = _start(client, auth_headers).get_json()["session_id"]
        for qid, selected in (("q1", [1]), ("q2", [0, 2]), ("q3", [3])):
            client.patch(f"/api/sessions/{session_id}/answers",
                         json={"question_id": qid, "selected": selected}, headers=auth_headers)
        client.post(f"/api/sessions/{session_id}/submit", headers=auth_headers)

        stats = client.get("/api/stats", headers=auth_headers).get_json()
        assert stats["overview"]["total_exams"] == 1
        assert stats["overview"]["best_score"] == 1000
        assert stats["overview"]["pass_rate"] == 100.0


def test_banks_and_certifications(client):
    banks = client.get("/api/banks").get_json()
    assert [b["bank_id"] for b in banks] == ["test-bank"]

    certifications = client.get("/api/certifications").get_json()
    codes = {c["code"]: c for c in certifications}
    assert codes["CLF-C01"]["passing_score"] == 700
    assert codes["SAA-C03"]["passing_score"] == 720


def test_reap_expired_command(app, client, auth_headers, clock):
    session_id = _start(client, auth_headers).get_json()["session_id"]
    clock.advance(minutes=30)

    output = app.test_cli_runner().invoke(args=["reap-expired"]).output

    assert "Expired and scored 1 session(s)" in output
    results = client.get("/api/results", headers=auth_headers).get_json()
    assert [r["session_id"] for r in results] == [session_id]
    assert results[0]["expired"] is True
