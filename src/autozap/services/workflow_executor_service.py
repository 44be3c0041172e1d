"""
Workflow Executor Service
Matches incoming messages against workflow triggers and walks the node graph
for each contact. Execution state lives in the database, so a conversation
paused on a questionnaire or a wait node survives restarts.
"""
import asyncio
import weakref
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List

# Utils
from autozap.utils.log_utils import LogUtil
from autozap.utils.environment_utils import EnvironmentUtils
from autozap.utils.template_utils import replace_variables, format_phone
from autozap.utils.condition_utils import evaluate_condition, ConditionSyntaxError

# Database
from autozap.database.app_db import AppDB

# Services
from autozap.services.whatsapp_cloud_service import WhatsAppCloudService
from autozap.services.ai_service import AIService
from autozap.services.conversation_status_service import ConversationStatusService
from autozap.services.workflow_graph_service import WorkflowGraphService

# Models
from autozap.models.workflow_data import WorkflowData, QuestionnaireOption
from autozap.models.execution_data import WorkflowExecution
from autozap.models.wait_data import WorkflowWait
from autozap.models.message_data import IncomingMessage
from autozap.models.instance_data import InstanceData

DEFAULT_AI_PROMPT = "Responda à mensagem do usuário de forma amigável e útil."
AI_ERROR_MESSAGE = "Desculpe, ocorreu um erro ao processar sua mensagem. Nossa equipe foi notificada."
TRANSFER_MESSAGE = "Nossa equipe entrará em contato em breve. Aguarde um momento, por favor."
CLOSE_MESSAGE = "Obrigado pelo contato! Esta conversa foi encerrada. Se precisar de mais alguma coisa, é só nos chamar novamente."
UNRECOGNIZED_OPTION_MESSAGE = "Desculpe, não entendi sua resposta. Por favor, responda com o número ou texto da opção."

BUTTON_PREFIX = "option-"
MAX_BUTTON_OPTIONS = 3
BUTTON_TITLE_LIMIT = 20
NODE_HISTORY_SIZE = 10
AI_ONLY_HISTORY_SIZE = 20
DEFAULT_WAIT_SECONDS = 60

WAIT_UNIT_SECONDS = {"seconds": 1, "minutes": 60, "hours": 3600}
# Paused executions that were dropped; the message is matched against triggers instead
DROPPED_EXECUTION_STATUSES = ("stale_execution", "workflow_unavailable")

TONE_DESCRIPTIONS = {
    "friendly": "amigável, descontraído e prestativo",
    "professional": "profissional, educado e eficiente",
    "casual": "casual, descontraído e próximo",
    "formal": "formal, respeitoso e polido",
}
DEFAULT_TONE_DESCRIPTION = "amigável e prestativo"


def build_contact_variables(contact_number: str, contact_name: Optional[str] = None) -> Dict[str, Any]:
    digits, display = format_phone(contact_number)
    return {
        "nome": contact_name or display or "Usuário",
        "telefone": display or contact_number,
        "telefoneNumero": digits or contact_number,
    }


def build_ai_system_prompt(business_details: Dict[str, Any], contact_name: str) -> str:
    """
    System prompt for AI-only workflows, built from the business profile saved with the workflow
    """
    business_name = business_details.get("businessName") or "este negócio"
    business_description = business_details.get("businessDescription") or ""
    products = business_details.get("products") or []
    services = business_details.get("services") or []
    tone = business_details.get("tone") or "friendly"
    additional_info = business_details.get("additionalInfo") or ""

    tone_description = TONE_DESCRIPTIONS.get(tone, DEFAULT_TONE_DESCRIPTION)

    prompt = f"Você é um assistente virtual de {business_name}. "
    if business_description:
        prompt += f"{business_description} "
    prompt += f"Seu papel é conversar com clientes de forma {tone_description} e ajudá-los da melhor forma possível. "

    if products:
        prompt += "\n\nProdutos oferecidos:\n" + "\n".join(f"{i + 1}. {p}" for i, p in enumerate(products))
    if services:
        prompt += "\n\nServiços oferecidos:\n" + "\n".join(f"{i + 1}. {s}" for i, s in enumerate(services))
    if additional_info:
        prompt += f"\n\nInformações adicionais:\n{additional_info}"

    prompt += (
        f"\n\nVocê está conversando com {contact_name}. Seja natural, útil e sempre mantenha o tom "
        f"{tone_description}. Se não souber algo, seja honesto e ofereça ajuda de outras formas."
    )
    return prompt


def resolve_questionnaire_option(
    options: List[QuestionnaireOption],
    message_body: str,
    button_id: Optional[str] = None
) -> Optional[str]:
    """
    Work out which option a reply picked.

    Tried in order: the button id of an interactive reply, a body that is itself
    a button id, the option label (equal or contained either way), a leading
    1-based option number.

    Returns:
        The option id, or None when the reply matches no option
    """
    option_ids = {option.id.lower(): option.id for option in options}

    if button_id and button_id.lower().startswith(BUTTON_PREFIX):
        option_id = option_ids.get(button_id.lower()[len(BUTTON_PREFIX):])
        if option_id:
            return option_id

    message_lower = (message_body or "").lower().strip()
    if message_lower.startswith(BUTTON_PREFIX):
        option_id = option_ids.get(message_lower[len(BUTTON_PREFIX):])
        if option_id:
            return option_id

    if message_lower:
        for option in options:
            label = option.label.lower().strip()
            if label and (message_lower == label or label in message_lower or message_lower in label):
                return option.id

    digits = ""
    for char in message_lower:
        if not char.isdigit():
            break
        digits += char
    if digits:
        index = int(digits) - 1
        if 0 <= index < len(options):
            return options[index].id

    return None


class WorkflowExecutorService:
    """
    Runs workflows for contacts.

    One execution exists per (instance, contact). Nodes either continue to the
    next node, pause the execution (questionnaire, wait) or finish it
    (transfer_to_human, close_chat). Outbound messages of a contact are sent
    under a per-contact lock so they arrive in the order the graph produces them.
    """

    def __init__(
        self,
        log_util: LogUtil,
        environment_utils: EnvironmentUtils,
        app_db: AppDB,
        whatsapp_cloud_service: WhatsAppCloudService,
        ai_service: AIService,
        conversation_status_service: ConversationStatusService,
        workflow_graph_service: WorkflowGraphService
    ):
        self.log_util = log_util
        self.app_db = app_db
        self.whatsapp_cloud_service = whatsapp_cloud_service
        self.ai_service = ai_service
        self.conversation_status_service = conversation_status_service
        self.workflow_graph_service = workflow_graph_service
        self.max_iterations = int(environment_utils.get_env_variable("MAX_WORKFLOW_ITERATIONS"))
        self._send_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def _contact_lock(self, instance_id: str, contact_number: str) -> asyncio.Lock:
        key = f"{instance_id}-{contact_number}"
        lock = self._send_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._send_locks[key] = lock
        return lock

    async def _send_text(self, instance_id: str, contact_number: str, text: str) -> None:
        async with self._contact_lock(instance_id, contact_number):
            await self.whatsapp_cloud_service.send_text(instance_id, contact_number, text)

    async def execute_workflows(self, instance_id: str, message: IncomingMessage) -> Dict[str, Any]:
        """
        Entry point for every inbound message that is not on a closed conversation.

        A contact with an execution in progress gets the message routed to the
        paused node; otherwise the first active workflow whose trigger is
        contained in the message starts.

        Returns:
            Dict with status and, when a workflow ran, its id and outcome
        """
        contact_number = message.from_number
        message_body = (message.body or "").lower().strip()

        execution = await self.app_db.get_execution(instance_id, contact_number)
        if execution is not None:
            result = await self.process_questionnaire_response(instance_id, contact_number, message_body)
            if result["status"] not in DROPPED_EXECUTION_STATUSES:
                return result

        instance = await self.app_db.get_instance(instance_id)
        if instance is None:
            self.log_util.warning(
                service_name="WorkflowExecutorService",
                message=f"Instance {instance_id} not found, skipping workflows"
            )
            return {"status": "error", "message": "Instance not found"}

        workflows = await self.app_db.get_active_workflows(instance.user_id, instance_id)

        for workflow in workflows:
            trigger = workflow.trigger.lower().strip()
            if not trigger or trigger not in message_body:
                continue

            self.log_util.info(
                service_name="WorkflowExecutorService",
                message=f"Workflow '{workflow.name}' ({workflow.id}) triggered for {contact_number} on instance {instance_id}"
            )

            if workflow.is_ai_only:
                await self.execute_ai_only_workflow(workflow, instance, contact_number, message_body, message.contact_name)
                return {"status": "success", "workflow_id": workflow.id, "outcome": "ai_only"}

            trigger_node = workflow.get_trigger_node()
            if trigger_node is None:
                self.log_util.warning(
                    service_name="WorkflowExecutorService",
                    message=f"Workflow {workflow.id} has no trigger node, trying the next workflow"
                )
                continue

            # Timers left by an earlier run must not resume the new one
            await self.app_db.delete_pending_waits(instance_id, contact_number)
            execution = await self.app_db.save_execution(WorkflowExecution(
                instance_id=instance_id,
                contact_number=contact_number,
                workflow_id=workflow.id,
                current_node_id=trigger_node.id,
                variables=build_contact_variables(contact_number, message.contact_name)
            ))
            outcome = await self.run_execution(workflow, execution, instance)
            return {"status": "success", "workflow_id": workflow.id, "outcome": outcome}

        return {"status": "no_match"}

    async def run_execution(self, workflow: WorkflowData, execution: WorkflowExecution, instance: InstanceData) -> str:
        """
        Walk the graph from execution.current_node_id.

        Returns:
            "paused" when a node waits for a reply or a timer (the execution is kept),
            "finished" when a node closed or transferred the conversation,
            "ended" when the graph ran out of nodes or hit the iteration cap,
            "error" when a node raised (the execution is dropped)
        """
        nodes = self.workflow_graph_service.index_nodes(workflow)
        current_node_id: Optional[str] = execution.current_node_id
        iterations = 0

        try:
            while current_node_id and iterations < self.max_iterations:
                iterations += 1
                node = nodes.get(current_node_id)
                if node is None:
                    self.log_util.warning(
                        service_name="WorkflowExecutorService",
                        message=f"Node {current_node_id} not found in workflow {workflow.id}"
                    )
                    break

                self.log_util.debug(
                    service_name="WorkflowExecutorService",
                    message=f"Executing node {node.type} ({node.id}) for {execution.contact_number}"
                )

                result = await self.execute_node(node, workflow, execution, instance)
                action = result["action"]

                if action == "finish":
                    await self.app_db.delete_execution(execution.instance_id, execution.contact_number)
                    return "finished"

                if action == "pause":
                    execution.current_node_id = node.id
                    execution.status = result["status"]
                    await self.app_db.save_execution(execution)
                    return "paused"

                current_node_id = result["next_node_id"]
                execution.current_node_id = current_node_id or node.id

            if current_node_id and iterations >= self.max_iterations:
                self.log_util.warning(
                    service_name="WorkflowExecutorService",
                    message=f"Workflow {workflow.id} reached {self.max_iterations} iterations for {execution.contact_number}, stopping"
                )

            await self.app_db.delete_execution(execution.instance_id, execution.contact_number)
            return "ended"
        except Exception as e:
            self.log_util.error(
                service_name="WorkflowExecutorService",
                message=f"Error executing workflow {workflow.id} for {execution.contact_number}: {str(e)}"
            )
            await self.app_db.delete_execution(execution.instance_id, execution.contact_number)
            return "error"

    def _next(self, node_id: str, workflow: WorkflowData, source_handle: Optional[str] = None) -> Dict[str, Any]:
        return {
            "action": "continue",
            "next_node_id": self.workflow_graph_service.get_next_node_id(node_id, workflow.edges, source_handle)
        }

    async def execute_node(
        self,
        node: Any,
        workflow: WorkflowData,
        execution: WorkflowExecution,
        instance: InstanceData
    ) -> Dict[str, Any]:
        """
        Execute one node.

        Returns:
            {"action": "continue", "next_node_id": ...}, {"action": "pause", "status": ...}
            or {"action": "finish"}
        """
        instance_id = execution.instance_id
        contact_number = execution.contact_number
        data = node.data

        if node.type == "trigger":
            return self._next(node.id, workflow)

        if node.type == "message":
            await self._send_message_node(instance_id, contact_number, data, execution.variables)
            return self._next(node.id, workflow)

        if node.type == "wait":
            await self._schedule_wait(node, workflow, execution)
            return {"action": "pause", "status": "waiting_timer"}

        if node.type == "questionnaire":
            await self._send_questionnaire(instance_id, contact_number, data, execution.variables)
            return {"action": "pause", "status": "waiting_reply"}

        if node.type == "transfer_to_human":
            await self.conversation_status_service.update_status(instance_id, contact_number, "waiting_human")
            await self._send_text(instance_id, contact_number, data.message or TRANSFER_MESSAGE)
            return {"action": "finish"}

        if node.type == "close_chat":
            await self.conversation_status_service.update_status(instance_id, contact_number, "closed")
            await self._send_text(instance_id, contact_number, data.message or CLOSE_MESSAGE)
            return {"action": "finish"}

        if node.type == "ai":
            await self._run_ai_node(node, execution, instance)
            return self._next(node.id, workflow)

        # condition
        result = self.evaluate_condition(data.condition, execution.user_response or "")
        return self._next(node.id, workflow, "true" if result else "false")

    async def _send_message_node(self, instance_id: str, contact_number: str, data: Any, variables: Dict[str, Any]) -> None:
        message_text = replace_variables(data.message or "", variables)

        async with self._contact_lock(instance_id, contact_number):
            if data.fileUrl and data.fileType:
                try:
                    if data.fileType == "image":
                        await self.whatsapp_cloud_service.send_image(instance_id, contact_number, data.fileUrl, message_text)
                    elif data.fileType == "video":
                        await self.whatsapp_cloud_service.send_video(instance_id, contact_number, data.fileUrl, message_text)
                    else:
                        await self.whatsapp_cloud_service.send_document(
                            instance_id, contact_number, data.fileUrl, data.fileName or "documento", message_text
                        )
                    return
                except Exception as e:
                    self.log_util.error(
                        service_name="WorkflowExecutorService",
                        message=f"Error sending {data.fileType} to {contact_number}, falling back to text: {str(e)}"
                    )
            if message_text:
                await self.whatsapp_cloud_service.send_text(instance_id, contact_number, message_text)

    async def _send_questionnaire(self, instance_id: str, contact_number: str, data: Any, variables: Dict[str, Any]) -> None:
        question_text = replace_variables(data.question or "", variables)
        options = data.options

        async with self._contact_lock(instance_id, contact_number):
            if 0 < len(options) <= MAX_BUTTON_OPTIONS:
                buttons = [
                    {
                        "id": f"{BUTTON_PREFIX}{option.id}",
                        "title": replace_variables(option.label, variables)[:BUTTON_TITLE_LIMIT]
                    }
                    for option in options
                ]
                await self.whatsapp_cloud_service.send_interactive_buttons(instance_id, contact_number, question_text, buttons)
                return

            await self.whatsapp_cloud_service.send_text(instance_id, contact_number, question_text)
            if options:
                options_text = "\n".join(
                    f"{index + 1}. {replace_variables(option.label, variables)}"
                    for index, option in enumerate(options)
                )
                await self.whatsapp_cloud_service.send_text(instance_id, contact_number, options_text)

    async def _schedule_wait(self, node: Any, workflow: WorkflowData, execution: WorkflowExecution) -> WorkflowWait:
        duration = node.data.duration or DEFAULT_WAIT_SECONDS
        unit = node.data.unit or "seconds"
        wait_seconds = duration * WAIT_UNIT_SECONDS.get(unit, 1)
        started_at = datetime.utcnow()

        wait = await self.app_db.save_wait(WorkflowWait(
            instance_id=execution.instance_id,
            contact_number=execution.contact_number,
            workflow_id=workflow.id,
            node_id=node.id,
            duration=duration,
            unit=unit,
            wait_seconds=wait_seconds,
            started_at=started_at,
            resume_at=started_at + timedelta(seconds=wait_seconds)
        ))
        self.log_util.info(
            service_name="WorkflowExecutorService",
            message=f"Execution of {execution.contact_number} waiting {duration} {unit} on node {node.id}"
        )
        return wait

    async def _conversation_history(self, instance_id: str, contact_number: str, limit: int) -> List[Dict[str, str]]:
        recent_messages = await self.app_db.get_recent_messages(instance_id, contact_number, limit)
        return [
            {"role": "assistant" if message.is_from_me else "user", "content": message.body}
            for message in reversed(recent_messages)
        ]

    async def _run_ai_node(self, node: Any, execution: WorkflowExecution, instance: InstanceData) -> None:
        instance_id = execution.instance_id
        contact_number = execution.contact_number
        data = node.data
        try:
            history = await self._conversation_history(instance_id, contact_number, NODE_HISTORY_SIZE)
            ai_response = await self.ai_service.generate_response(
                data.prompt or DEFAULT_AI_PROMPT,
                system_prompt=data.systemPrompt,
                history=history,
                variables=execution.variables,
                temperature=data.temperature if data.temperature is not None else 0.7,
                max_tokens=data.maxTokens or 500,
                user_id=instance.user_id,
                instance_id=instance_id,
                contact_number=contact_number
            )
            await self._send_text(instance_id, contact_number, replace_variables(ai_response, execution.variables))
            self.log_util.info(
                service_name="WorkflowExecutorService",
                message=f"AI reply sent to {contact_number} from node {node.id}"
            )
        except Exception as e:
            self.log_util.error(
                service_name="WorkflowExecutorService",
                message=f"Error generating AI reply for {contact_number}: {str(e)}"
            )
            await self._send_text(instance_id, contact_number, AI_ERROR_MESSAGE)

    def evaluate_condition(self, condition: str, user_response: str) -> bool:
        try:
            return evaluate_condition(condition, user_response)
        except ConditionSyntaxError as e:
            self.log_util.warning(
                service_name="WorkflowExecutorService",
                message=f"Invalid condition '{condition}', evaluating as false: {str(e)}"
            )
            return False

    async def process_questionnaire_response(self, instance_id: str, contact_number: str, message_body: str) -> Dict[str, Any]:
        """
        Continue a paused execution with the contact's reply.

        Only questionnaire nodes consume replies; a contact paused on a wait node
        has the message ignored until the timer resumes the execution. An execution
        left on a node that no longer exists, or on a wait whose timer is gone, is
        dropped.
        """
        execution = await self.app_db.get_execution(instance_id, contact_number)
        if execution is None:
            return {"status": "no_execution"}

        workflow = await self.app_db.get_workflow(execution.workflow_id)
        if workflow is None or not workflow.is_active:
            await self.app_db.delete_execution(instance_id, contact_number)
            return {"status": "workflow_unavailable"}

        node = workflow.get_node(execution.current_node_id)
        if node is not None and node.type == "wait" and await self.app_db.has_pending_wait(instance_id, contact_number, node.id):
            return {"status": "ignored", "node_id": node.id}
        if node is None or node.type != "questionnaire":
            # The graph changed under the execution or its timer is gone
            self.log_util.warning(
                service_name="WorkflowExecutorService",
                message=f"Execution of {contact_number} is stuck on node {execution.current_node_id} of workflow {workflow.id}, dropping it"
            )
            await self.app_db.delete_execution(instance_id, contact_number)
            return {"status": "stale_execution", "node_id": execution.current_node_id}

        button_id = None
        last_button = await self.app_db.get_last_button_message(instance_id, contact_number)
        if last_button is not None and (last_button.body or "").lower().strip() == message_body:
            button_id = (last_button.interactive_data or {}).get("buttonId")

        option_id = resolve_questionnaire_option(node.data.options, message_body, button_id)
        if option_id is None:
            await self._send_text(instance_id, contact_number, UNRECOGNIZED_OPTION_MESSAGE)
            return {"status": "retry"}

        next_node_id = self.workflow_graph_service.get_next_node_id(node.id, workflow.edges, f"{BUTTON_PREFIX}{option_id}")
        if next_node_id is None:
            self.log_util.info(
                service_name="WorkflowExecutorService",
                message=f"No edge for option {option_id} on node {node.id}, ending execution of {contact_number}"
            )
            await self.app_db.delete_execution(instance_id, contact_number)
            return {"status": "ended", "option_id": option_id}

        instance = await self.app_db.get_instance(instance_id)
        if instance is None:
            await self.app_db.delete_execution(instance_id, contact_number)
            return {"status": "error", "message": "Instance not found"}

        execution.current_node_id = next_node_id
        execution.user_response = message_body
        execution.status = "running"
        await self.app_db.save_execution(execution)
        outcome = await self.run_execution(workflow, execution, instance)
        return {"status": "success", "option_id": option_id, "outcome": outcome}

    async def resume_after_wait(self, wait: WorkflowWait) -> Dict[str, Any]:
        """
        Continue an execution whose wait node timer has elapsed.
        Stale waits (the execution moved on or was replaced) are skipped.
        """
        execution = await self.app_db.get_execution(wait.instance_id, wait.contact_number)
        if execution is None or execution.workflow_id != wait.workflow_id or execution.current_node_id != wait.node_id:
            return {"status": "stale"}

        workflow = await self.app_db.get_workflow(wait.workflow_id)
        instance = await self.app_db.get_instance(wait.instance_id)
        if workflow is None or instance is None:
            await self.app_db.delete_execution(wait.instance_id, wait.contact_number)
            return {"status": "workflow_unavailable"}

        next_node_id = self.workflow_graph_service.get_next_node_id(wait.node_id, workflow.edges)
        if next_node_id is None:
            await self.app_db.delete_execution(wait.instance_id, wait.contact_number)
            return {"status": "ended"}

        execution.current_node_id = next_node_id
        execution.status = "running"
        await self.app_db.save_execution(execution)
        outcome = await self.run_execution(workflow, execution, instance)
        return {"status": "success", "outcome": outcome}

    async def execute_ai_only_workflow(
        self,
        workflow: WorkflowData,
        instance: InstanceData,
        contact_number: str,
        user_message: str,
        contact_name: Optional[str] = None
    ) -> None:
        """
        Answer the contact with the LLM directly, using the business profile of the workflow.
        No execution is kept: every message that matches the trigger gets one reply.
        """
        variables = build_contact_variables(contact_number, contact_name)
        try:
            history = await self._conversation_history(instance.id, contact_number, AI_ONLY_HISTORY_SIZE)
            system_prompt = build_ai_system_prompt(workflow.business_details(), contact_name or variables["telefone"])
            ai_response = await self.ai_service.generate_response(
                user_message,
                system_prompt=system_prompt,
                history=history,
                variables=variables,
                temperature=0.7,
                max_tokens=500,
                user_id=instance.user_id,
                instance_id=instance.id,
                contact_number=contact_number
            )
            await self._send_text(instance.id, contact_number, ai_response)
            self.log_util.info(
                service_name="WorkflowExecutorService",
                message=f"AI-only reply sent to {contact_number} by workflow {workflow.id}"
            )
        except Exception as e:
            self.log_util.error(
                service_name="WorkflowExecutorService",
                message=f"Error running AI-only workflow {workflow.id} for {contact_number}: {str(e)}"
            )
            await self._send_text(instance.id, contact_number, AI_ERROR_MESSAGE)
