"""End-to-end workflow tests: paper creation through finalization."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import NO_CORRECTIONS, corrections_json, make_llm, questions_json
from paperforge.config import settings


@pytest.fixture
def exact_generation(monkeypatch):
    """Generate exactly the target count so question numbers are predictable."""
    monkeypatch.setattr(settings, "over_generation_factor", 1.0)


def test_generate_proofread_finalize(client: TestClient, llm_holder, exact_generation):
    """Test 10 generated questions, 2 proofreading corrections, then finalization."""
    paper = client.post(
        "/api/papers",
        json={
            "institute_id": "inst_01",
            "title": "Cell Biology Quiz",
            "subject": "Biology",
            "question_count": 10,
        },
    ).json()
    section_id = paper["sections"][0]["id"]
    client.post(
        f"/api/sections/{section_id}/chapters",
        json={"chapters": [{"chapter_id": "ch_cell", "chapter_name": "The Cell"}]},
    )

    llm_holder["client"] = make_llm(questions_json(10), NO_CORRECTIONS)
    response = client.post(f"/api/sections/{section_id}/generate", json={})
    assert response.status_code == 200
    assert response.json()["questions_generated"] == 10

    before = client.get(f"/api/sections/{section_id}/questions").json()["questions"]
    assert len(before) == 10
    flagged = [before[2]["id"], before[7]["id"]]
    texts_before = {q["id"]: q["question_text"] for q in before}

    llm_holder["client"] = make_llm(corrections_json(flagged))
    response = client.post(f"/api/sections/{section_id}/proofread")
    assert response.status_code == 200
    run = response.json()
    assert run["status"] == "completed"
    assert run["issues_found"] == 2
    assert sorted(run["corrections_applied"]) == sorted(flagged)
    assert run["questions_checked"] == 10

    after = client.get(f"/api/sections/{section_id}/questions").json()["questions"]
    for question in after:
        if question["id"] in flagged:
            assert question["question_text"] != texts_before[question["id"]]
            assert question["correct_answer"] == "B"
        else:
            assert question["question_text"] == texts_before[question["id"]]

    section = client.get(f"/api/sections/{section_id}").json()
    assert section["proofreading"]["issues_found"] == 2

    for question in after:
        client.post(f"/api/questions/{question['id']}/selection", json={"is_selected": True})
    assert client.get(f"/api/papers/{paper['id']}").json()["derived_status"] == "ready_to_finalize"

    assert client.post(f"/api/sections/{section_id}/finalize").status_code == 200
    response = client.post(f"/api/papers/{paper['id']}/finalize")
    assert response.status_code == 200
    assert response.json()["selected_count"] == 10


def test_knowledge_guided_templated_paper(client: TestClient, llm_holder, exact_generation):
    """Test analysed chapter knowledge feeds generation across a templated paper."""
    llm_holder["client"] = make_llm(
        json.dumps(
            {
                "topics": ["Kinematics"],
                "depth_indicators": {"Kinematics": "advanced"},
                "terminology_mappings": {"velocity": "rate of change of displacement"},
            }
        )
    )
    analysis = client.post(
        "/api/knowledge/analyze",
        json={
            "chapter_id": "ch_motion",
            "institute_id": "inst_01",
            "material_id": "mat_motion",
            "material_title": "Motion Notes",
            "material_text": "Velocity is the rate of change of displacement.",
        },
    ).json()
    assert analysis["success"] is True

    paper = client.post(
        "/api/papers",
        json={
            "institute_id": "inst_01",
            "title": "Science Mock",
            "paper_template_id": "tpl_science",
            "sections": [
                {"subject": "Physics", "question_count": 2},
                {"subject": "Chemistry", "question_count": 2},
            ],
        },
    ).json()
    physics_id, chemistry_id = (s["id"] for s in paper["sections"])

    client.post(
        f"/api/sections/{physics_id}/chapters",
        json={"chapters": [{"chapter_id": "ch_motion", "chapter_name": "Motion"}]},
    )
    client.post(
        f"/api/sections/{chemistry_id}/chapters",
        json={"chapters": [{"chapter_id": "ch_atoms", "chapter_name": "Atoms"}]},
    )

    physics_llm = make_llm(questions_json(2, "Physics"), NO_CORRECTIONS)
    llm_holder["client"] = physics_llm
    assert client.post(f"/api/sections/{physics_id}/generate", json={}).status_code == 200
    prompt = physics_llm.client.chat.completions.create.call_args_list[0].kwargs["messages"][-1][
        "content"
    ]
    assert "- Kinematics (advanced)" in prompt
    assert "velocity -> rate of change of displacement" in prompt

    chemistry_llm = make_llm(questions_json(2, "Chemistry"), NO_CORRECTIONS)
    llm_holder["client"] = chemistry_llm
    assert client.post(f"/api/sections/{chemistry_id}/generate", json={}).status_code == 200
    prompt = chemistry_llm.client.chat.completions.create.call_args_list[0].kwargs["messages"][
        -1
    ]["content"]
    assert "Stay within these chapter topics" not in prompt

    assert client.get(f"/api/papers/{paper['id']}").json()["derived_status"] == "in_review"

    for section_id in (physics_id, chemistry_id):
        for question in client.get(f"/api/sections/{section_id}/questions").json()["questions"]:
            client.post(f"/api/questions/{question['id']}/selection", json={"is_selected": True})
        assert client.post(f"/api/sections/{section_id}/finalize").status_code == 200

    response = client.post(f"/api/papers/{paper['id']}/finalize")
    assert response.status_code == 200
    assert response.json()["status"] == "finalized"

    records = client.get("/api/usage/records?institute_id=inst_01").json()["records"]
    assert sorted(r["operation_type"] for r in records) == [
        "analyze", "generate", "generate", "proofread", "proofread",
    ]
