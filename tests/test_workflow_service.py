import pytest

from autozap.exceptions.app_exception import ValidationException, NotFoundException
from autozap.models.request.workflow_request import WorkflowUpdateRequest
from autozap.services.workflow_service import WorkflowService

NODES = [
    {"id": "t", "type": "trigger", "data": {"label": "Início"}},
    {"id": "a", "type": "ai", "data": {"prompt": "Ajude o cliente"}},
]
EDGES = [{"source": "t", "target": "a"}]


@pytest.fixture
def workflow_service(log_util, app_db, graph_service):
    return WorkflowService(log_util=log_util, app_db=app_db, workflow_graph_service=graph_service)


async def test_create_derives_uses_ai_and_scopes_to_user(workflow_service, app_db):
    saved = await workflow_service.create_workflow("user-1", {
        "name": "Atendimento", "trigger": "oi", "nodes": NODES, "edges": EDGES, "user_id": "intruder"
    })
    assert saved.id in app_db.workflows
    assert saved.user_id == "user-1"
    assert saved.uses_ai is True


async def test_create_rejects_invalid_graph(workflow_service):
    with pytest.raises(ValidationException) as exc_info:
        await workflow_service.create_workflow("user-1", {
            "name": "Sem gatilho", "trigger": "oi", "nodes": [{"id": "m", "type": "message"}], "edges": []
        })
    assert "graph" in exc_info.value.fields


async def test_create_rejects_invalid_payload(workflow_service):
    with pytest.raises(ValidationException) as exc_info:
        await workflow_service.create_workflow("user-1", {"name": "Sem gatilho", "trigger": "   "})
    assert "trigger" in exc_info.value.fields


async def test_ai_only_workflow_drops_graph(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {
        "name": "Assistente",
        "trigger": "ola",
        "isAIOnly": True,
        "aiBusinessDetails": {"businessName": "Padaria"},
        "nodes": NODES,
        "edges": EDGES,
    })
    assert saved.nodes == []
    assert saved.edges == []
    assert saved.uses_ai is True
    assert saved.business_details()["businessName"] == "Padaria"


async def test_manual_workflow_drops_business_details(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {
        "name": "Manual", "trigger": "oi", "nodes": NODES[:1], "edges": [],
        "aiBusinessDetails": {"businessName": "Padaria"},
    })
    assert saved.ai_business_details is None
    assert saved.uses_ai is False


async def test_foreign_instance_is_rejected(workflow_service, app_db):
    foreign = app_db.add_instance(user_id="user-2")
    with pytest.raises(ValidationException):
        await workflow_service.create_workflow("user-1", {
            "name": "Atendimento", "trigger": "oi", "instanceId": foreign.id, "nodes": NODES[:1], "edges": []
        })


async def test_other_tenants_cannot_read_or_delete(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {"name": "A", "trigger": "oi", "nodes": NODES[:1]})
    with pytest.raises(NotFoundException):
        await workflow_service.get_workflow("user-2", saved.id)
    with pytest.raises(NotFoundException):
        await workflow_service.delete_workflow("user-2", saved.id)
    assert await workflow_service.delete_workflow("user-1", saved.id) == {"success": True}


async def test_partial_update_keeps_untouched_fields(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {
        "name": "Atendimento", "trigger": "oi", "nodes": NODES, "edges": EDGES
    })
    updated = await workflow_service.update_workflow(
        "user-1", saved.id, WorkflowUpdateRequest.model_validate({"name": "Atendimento 2", "isActive": False})
    )
    assert updated.name == "Atendimento 2"
    assert updated.is_active is False
    assert updated.trigger == "oi"
    assert [node.id for node in updated.nodes] == ["t", "a"]
    assert updated.created_at == saved.created_at


async def test_update_revalidates_graph(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {"name": "A", "trigger": "oi", "nodes": NODES[:1]})
    with pytest.raises(ValidationException):
        await workflow_service.update_workflow(
            "user-1", saved.id, WorkflowUpdateRequest(nodes=[{"id": "m", "type": "message"}])
        )


async def test_toggle_flips_active_flag(workflow_service):
    saved = await workflow_service.create_workflow("user-1", {"name": "A", "trigger": "oi", "nodes": NODES[:1]})
    toggled = await workflow_service.toggle_workflow("user-1", saved.id)
    assert toggled.is_active is False
    toggled = await workflow_service.toggle_workflow("user-1", saved.id)
    assert toggled.is_active is True
