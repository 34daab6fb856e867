"""Ready-made workflows users can instantiate instead of building from scratch.

Each catalogue entry describes itself (category, platforms, tags, how many
target users it needs, which parameters it takes) and knows how to build a
fresh :class:`Workflow` owned by the requesting user. Building does not
persist anything; the service saves the result through the normal validated
save path.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field

from local_workflow_engine.engine.errors import NotFoundError, WorkflowValidationError
from local_workflow_engine.engine.workflow.models import (
    AnalyzeTextAction,
    BroadcastAction,
    ChatCommandTrigger,
    ChatMessageTrigger,
    ConditionalAction,
    DelayAction,
    EmailReceivedTrigger,
    ExtractKeywordsAction,
    GenerateResponseAction,
    Platform,
    ReplyEmailAction,
    RequireApprovalAction,
    SendChatAction,
    SendEmailAction,
    SentimentAction,
    SummarizeAction,
    TranslateAction,
    Workflow,
    WorkflowType,
)


@dataclass(frozen=True, slots=True)
class _Request:
    owner: str
    targets: list[str]
    params: dict[str, str]

    @property
    def target(self) -> str:
        """First target user, falling back to the owner."""
        return self.targets[0] if self.targets else self.owner


Builder = Callable[[_Request], Workflow]


@dataclass(frozen=True, slots=True)
class WorkflowTemplate:
    id: str
    name: str
    description: str
    category: str
    platforms: tuple[Platform, ...]
    tags: tuple[str, ...]
    build: Builder = field(repr=False)
    required_users: int = 0
    # Parameter name -> default; ``None`` marks a required parameter.
    parameters: Mapping[str, str | None] = field(default_factory=dict)


# Builders


def _urgent_email_alert(req: _Request) -> Workflow:
    return Workflow(
        name="Urgent Email → Chat Alert",
        description="Send a chat notification when an urgent email arrives",
        created_by=req.owner,
        triggers=[EmailReceivedTrigger(subject_filter=req.params["keyword"])],
        actions=[
            AnalyzeTextAction(
                input_text="{{email_subject}} - {{email_body}}",
                analysis_prompt=(
                    "Summarize this urgent email in 100 words or less, "
                    "focusing on what action is needed"
                ),
                output_variable="email_summary",
            ),
            SendChatAction(
                target_user_id=req.target,
                text=(
                    "URGENT EMAIL ALERT\n\nFrom: {{email_from}}\nSubject: {{email_subject}}"
                    "\n\nAI Summary:\n{{email_summary}}"
                ),
            ),
        ],
    )


def _chat_to_email(req: _Request) -> Workflow:
    return Workflow(
        name="Chat Command → Send Email",
        description="Turn a chat command into a formatted email",
        created_by=req.owner,
        workflow_type=WorkflowType.CROSS_USER,
        shared_with=[t for t in req.targets if t != req.owner],
        triggers=[ChatCommandTrigger(command="/sendemail")],
        actions=[
            GenerateResponseAction(
                prompt=(
                    "Convert this chat message into a professional email body. "
                    "Reply with the email body only."
                ),
                context="{{telegram_command_args}}",
                output_variable="email_content",
            ),
            SendEmailAction(
                target_user_id=req.target,
                subject="Message from chat",
                body="{{email_content}}",
            ),
            SendChatAction(target_user_id=req.owner, text="Email sent:\n\n{{email_content}}"),
        ],
    )


def _ai_auto_reply(req: _Request) -> Workflow:
    def reply(tone: str) -> GenerateResponseAction:
        return GenerateResponseAction(
            prompt=f"Write a {tone} and helpful reply to this customer support email.",
            context="{{email_body}}",
            output_variable="ai_reply",
        )

    return Workflow(
        name="AI Email Auto-Reply",
        description="Reply to support emails with an AI-written answer matched to their tone",
        created_by=req.owner,
        triggers=[EmailReceivedTrigger(subject_filter=req.params["keyword"])],
        actions=[
            SentimentAction(text="{{email_body}}", output_variable="email_sentiment"),
            ConditionalAction(
                condition="email_sentiment == negative",
                true_action=reply("empathetic"),
                false_action=reply("professional"),
            ),
            ReplyEmailAction(
                body=(
                    "{{ai_reply}}\n\n---\nThis is an automated AI-generated response. "
                    "A human will follow up if needed."
                ),
            ),
        ],
    )


def _team_notifications(req: _Request) -> Workflow:
    return Workflow(
        name="Team Notification System",
        description="Broadcast important emails to the team by chat and email",
        created_by=req.owner,
        workflow_type=WorkflowType.TEAM,
        shared_with=list(req.targets),
        triggers=[EmailReceivedTrigger(from_filter=req.params["sender"])],
        actions=[
            ExtractKeywordsAction(
                text="{{email_subject}} {{email_body}}", count=5, output_variable="email_keywords"
            ),
            SummarizeAction(
                content="{{email_body}}", max_length=150, output_variable="email_summary"
            ),
            BroadcastAction(
                target_user_ids=list(req.targets),
                platforms=[Platform.CHAT, Platform.EMAIL],
                subject="Team Alert: {{email_subject}}",
                content=(
                    "TEAM NOTIFICATION\n\nFrom: {{email_from}}\nSubject: {{email_subject}}"
                    "\n\nSummary: {{email_summary}}\n\nKeywords: {{email_keywords}}"
                ),
            ),
        ],
    )


def _support_escalation(req: _Request) -> Workflow:
    manager = req.targets[0]
    return Workflow(
        name="Support Escalation",
        description="Escalate high-priority support emails to a manager",
        created_by=req.owner,
        workflow_type=WorkflowType.CROSS_USER,
        shared_with=[manager],
        # One email matching several filters still runs once: dedup is per workflow.
        triggers=[
            EmailReceivedTrigger(subject_filter=keyword)
            for keyword in ("priority", "escalate", "urgent")
        ],
        actions=[
            AnalyzeTextAction(
                input_text="{{email_body}}",
                analysis_prompt=(
                    "Analyze this support email and determine the urgency level "
                    "(low, medium, high, critical) and the main issue category"
                ),
                output_variable="urgency_analysis",
            ),
            ConditionalAction(
                condition="urgency_analysis contains critical",
                true_action=SendChatAction(
                    target_user_id=manager,
                    text=(
                        "CRITICAL SUPPORT ISSUE\n\nFrom: {{email_from}}\n"
                        "Subject: {{email_subject}}\n\nAnalysis: {{urgency_analysis}}"
                    ),
                ),
                false_action=SendEmailAction(
                    target_user_id=manager,
                    subject="Support Escalation: {{email_subject}}",
                    body=(
                        "A support email has been escalated for your review.\n\n"
                        "From: {{email_from}}\nSubject: {{email_subject}}\n\n"
                        "AI Analysis: {{urgency_analysis}}"
                    ),
                ),
            ),
            DelayAction(minutes=30),
            RequireApprovalAction(
                approver_user_id=manager,
                timeout_minutes=120,
                message="Confirm the escalation response for {{email_subject}}",
                pending_action=SendEmailAction(
                    target_user_id=req.owner,
                    subject="Re: {{email_subject}} - Manager Response",
                    body=(
                        "This case has been reviewed by management. "
                        "Please proceed with standard escalation procedures."
                    ),
                ),
            ),
        ],
    )


def _email_translation(req: _Request) -> Workflow:
    language = req.params["language"]
    return Workflow(
        name="Email Translation Service",
        description=f"Translate incoming emails to {language} and forward them",
        created_by=req.owner,
        workflow_type=WorkflowType.CROSS_USER,
        shared_with=[t for t in req.targets if t != req.owner],
        triggers=[EmailReceivedTrigger(from_filter=req.params["sender"])],
        actions=[
            TranslateAction(
                text="{{email_subject}}",
                target_language=language,
                output_variable="translated_subject",
            ),
            TranslateAction(
                text="{{email_body}}", target_language=language, output_variable="translated_body"
            ),
            SendEmailAction(
                target_user_id=req.target,
                subject="[TRANSLATED] {{translated_subject}}",
                body=(
                    "Original sender: {{email_from}}\nOriginal subject: {{email_subject}}\n\n"
                    "Subject: {{translated_subject}}\n\n{{translated_body}}"
                ),
            ),
            SendChatAction(
                target_user_id=req.target,
                text="New translated email from {{email_from}}: {{translated_subject}}",
            ),
        ],
    )


def _meeting_scheduler(req: _Request) -> Workflow:
    return Workflow(
        name="Chat Meeting Scheduler",
        description="Send meeting invitations from a chat command",
        created_by=req.owner,
        workflow_type=WorkflowType.TEAM,
        shared_with=list(req.targets),
        triggers=[ChatCommandTrigger(command="/schedule")],
        actions=[
            AnalyzeTextAction(
                input_text="{{telegram_command_args}}",
                analysis_prompt=(
                    "Extract meeting details from this message: date, time, attendees, "
                    "subject and agenda. Format as structured information."
                ),
                output_variable="meeting_details",
            ),
            BroadcastAction(
                target_user_ids=list(req.targets),
                platforms=[Platform.EMAIL],
                subject="Meeting Invitation: {{telegram_command_args}}",
                content=(
                    "You have been invited to a meeting.\n\nDetails:\n{{meeting_details}}"
                    "\n\nPlease reply to confirm your attendance."
                ),
                output_variable="invited",
            ),
            SendChatAction(
                target_user_id=req.owner,
                text="Meeting invitations sent to {{invited}} people\n\n{{meeting_details}}",
            ),
        ],
    )


def _chat_forwarder(req: _Request) -> Workflow:
    target = req.targets[0]
    return Workflow(
        name="Chat → Chat Forwarder",
        description="Forward every chat message to another user with a short analysis",
        created_by=req.owner,
        workflow_type=WorkflowType.CROSS_USER,
        shared_with=[target],
        triggers=[ChatMessageTrigger()],
        actions=[
            AnalyzeTextAction(
                input_text="{{telegram_message}}",
                analysis_prompt=(
                    "Extract the key information, sentiment and urgency of this message "
                    "in one short paragraph."
                ),
                output_variable="message_analysis",
            ),
            SendChatAction(
                target_user_id=target,
                text=(
                    "Forwarded message\n\nFrom: {{telegram_from}}\nMessage: {{telegram_message}}"
                    "\n\nAI Analysis: {{message_analysis}}\nReceived: {{trigger_timestamp}}"
                ),
            ),
        ],
    )


def _smart_chat_relay(req: _Request) -> Workflow:
    target = req.targets[0]
    keywords = [k.strip() for k in req.params["keywords"].split(",") if k.strip()]
    if not keywords:
        raise WorkflowValidationError("Template parameter 'keywords' needs at least one keyword")

    def relay(header: str) -> SendChatAction:
        return SendChatAction(
            target_user_id=target,
            text=(
                f"{header}\n\nFrom: {{{{telegram_from}}}}\nMessage: {{{{telegram_message}}}}"
                "\n\nKeywords: {{message_keywords}}"
            ),
        )

    return Workflow(
        name="Smart Chat Relay",
        description="Forward chat messages containing specific keywords to another user",
        created_by=req.owner,
        workflow_type=WorkflowType.CROSS_USER,
        shared_with=[target],
        triggers=[ChatMessageTrigger(match_condition=k) for k in keywords],
        actions=[
            ExtractKeywordsAction(
                text="{{telegram_message}}", count=3, output_variable="message_keywords"
            ),
            AnalyzeTextAction(
                input_text="{{telegram_message}}",
                analysis_prompt="Is this message urgent? Answer only yes or no.",
                output_variable="message_urgent",
            ),
            ConditionalAction(
                condition="message_urgent contains yes",
                true_action=relay("URGENT MESSAGE RELAY"),
                false_action=relay("Message Relay"),
            ),
        ],
    )


def _email_alert(name: str, description: str, trigger: EmailReceivedTrigger) -> Builder:
    def build(req: _Request) -> Workflow:
        return Workflow(
            name=name.format(**req.params),
            description=description.format(**req.params),
            created_by=req.owner,
            triggers=[trigger.model_copy(update=_filled(trigger, req.params))],
            actions=[
                SendChatAction(
                    target_user_id=req.target,
                    text=(
                        "Email alert\n\nFrom: {{email_from}}\nSubject: {{email_subject}}\n"
                        "Received: {{trigger_timestamp}}\n\n{{email_body}}"
                    ),
                )
            ],
        )

    return build


def _filled(trigger: EmailReceivedTrigger, params: Mapping[str, str]) -> dict[str, str | None]:
    """Fill ``{param}`` placeholders in the trigger's filters; blank filters become None."""

    update: dict[str, str | None] = {}
    for name in ("from_filter", "subject_filter", "body_filter"):
        value = getattr(trigger, name)
        if value is not None:
            update[name] = value.format(**params).strip() or None
    return update


def _advanced_email_filter(req: _Request) -> Workflow:
    sender, subject = req.params["sender"].strip(), req.params["subject"].strip()
    if not (sender or subject):
        raise WorkflowValidationError("Give at least one of the 'sender' or 'subject' parameters")
    name = "Email Filter:"
    if sender:
        name += " From({sender})"
    if subject:
        name += " Subject({subject})"
    build = _email_alert(
        name,
        "Email filter combining sender and subject conditions",
        EmailReceivedTrigger(from_filter="{sender}", subject_filter="{subject}"),
    )
    return build(req)


_EMAIL_AND_CHAT = (Platform.EMAIL, Platform.CHAT)

TEMPLATES: dict[str, WorkflowTemplate] = {
    t.id: t
    for t in (
        WorkflowTemplate(
            id="urgent-email-chat",
            name="Urgent Email → Chat Alert",
            description="Get instant chat notifications for urgent emails",
            category="Email Notifications",
            platforms=_EMAIL_AND_CHAT,
            tags=("urgent", "notifications", "email", "chat"),
            build=_urgent_email_alert,
            parameters={"keyword": "urgent"},
        ),
        WorkflowTemplate(
            id="chat-email-sender",
            name="Chat → Send Email",
            description="Send emails quickly with a chat command",
            category="Email Management",
            platforms=_EMAIL_AND_CHAT,
            tags=("email", "chat", "commands"),
            build=_chat_to_email,
        ),
        WorkflowTemplate(
            id="ai-auto-reply",
            name="AI Email Auto-Reply",
            description="Automatically respond to emails using AI",
            category="AI Automation",
            platforms=(Platform.EMAIL,),
            tags=("ai", "email", "auto-reply", "support"),
            build=_ai_auto_reply,
            parameters={"keyword": "support"},
        ),
        WorkflowTemplate(
            id="team-notifications",
            name="Team Notification System",
            description="Broadcast important emails to your team",
            category="Team Collaboration",
            platforms=_EMAIL_AND_CHAT,
            tags=("team", "broadcast", "notifications"),
            build=_team_notifications,
            required_users=1,
            parameters={"sender": "manager"},
        ),
        WorkflowTemplate(
            id="support-escalation",
            name="Support Escalation",
            description="Automatically escalate high-priority support emails",
            category="Customer Support",
            platforms=_EMAIL_AND_CHAT,
            tags=("support", "escalation", "approval"),
            build=_support_escalation,
            required_users=1,
        ),
        WorkflowTemplate(
            id="email-translation",
            name="Email Translation Service",
            description="Translate international emails automatically",
            category="Communication",
            platforms=_EMAIL_AND_CHAT,
            tags=("translation", "ai", "email"),
            build=_email_translation,
            parameters={"sender": "@international", "language": "English"},
        ),
        WorkflowTemplate(
            id="meeting-scheduler",
            name="Chat Meeting Scheduler",
            description="Schedule meetings using chat commands",
            category="Meeting Management",
            platforms=_EMAIL_AND_CHAT,
            tags=("meetings", "scheduling", "chat"),
            build=_meeting_scheduler,
            required_users=1,
        ),
        WorkflowTemplate(
            id="chat-forwarder",
            name="Chat → Chat Forwarder",
            description="Forward new chat messages to another user automatically",
            category="Message Forwarding",
            platforms=(Platform.CHAT,),
            tags=("chat", "forwarding"),
            build=_chat_forwarder,
            required_users=1,
        ),
        WorkflowTemplate(
            id="smart-chat-relay",
            name="Smart Chat Relay",
            description="Forward chat messages with specific keywords to another user",
            category="Smart Filtering",
            platforms=(Platform.CHAT,),
            tags=("chat", "keywords", "relay", "ai"),
            build=_smart_chat_relay,
            required_users=1,
            parameters={"keywords": "urgent,important,help"},
        ),
        WorkflowTemplate(
            id="email-from-sender",
            name="Email From Specific Sender",
            description="Get a chat alert when a specific sender emails you",
            category="Email Filtering",
            platforms=_EMAIL_AND_CHAT,
            tags=("email", "sender", "filtering"),
            build=_email_alert(
                "Email From: {sender}",
                "Alert on emails from {sender}",
                EmailReceivedTrigger(from_filter="{sender}"),
            ),
            parameters={"sender": None},
        ),
        WorkflowTemplate(
            id="email-subject-keyword",
            name="Email Subject Keyword",
            description="Get a chat alert when an email subject contains a keyword",
            category="Email Filtering",
            platforms=_EMAIL_AND_CHAT,
            tags=("email", "subject", "keywords", "filtering"),
            build=_email_alert(
                "Email Subject: {keyword}",
                "Alert on emails with '{keyword}' in the subject",
                EmailReceivedTrigger(subject_filter="{keyword}"),
            ),
            parameters={"keyword": None},
        ),
        WorkflowTemplate(
            id="advanced-email-filter",
            name="Advanced Email Filter",
            description="Combine sender and subject filters for precise email matching",
            category="Email Filtering",
            platforms=_EMAIL_AND_CHAT,
            tags=("email", "advanced", "filtering", "combined"),
            build=_advanced_email_filter,
            parameters={"sender": "", "subject": ""},
        ),
    )
}


def list_templates(category: str | None = None) -> list[WorkflowTemplate]:
    templates = list(TEMPLATES.values())
    if category is not None:
        templates = [t for t in templates if t.category.lower() == category.lower()]
    return templates


def get_template(template_id: str) -> WorkflowTemplate:
    template = TEMPLATES.get(template_id)
    if template is None:
        raise NotFoundError(f"Workflow template not found: {template_id}")
    return template


def create_from_template(
    template_id: str,
    *,
    user_id: str,
    target_user_ids: list[str] | None = None,
    params: Mapping[str, str] | None = None,
) -> Workflow:
    """Build an unsaved workflow from a catalogue entry.

    Args:
        template_id: Catalogue id, e.g. ``"support-escalation"``.
        user_id: Owner of the new workflow.
        target_user_ids: Users the workflow notifies or is shared with. Templates
            that address a single user fall back to the owner when none is given.
        params: Values for the template's parameters; omitted ones take their
            defaults.

    Raises:
        NotFoundError: If ``template_id`` is unknown.
        WorkflowValidationError: If targets or parameters are missing or unknown.
    """

    template = get_template(template_id)
    targets = [t.strip() for t in target_user_ids or [] if t.strip()]
    if len(targets) < template.required_users:
        raise WorkflowValidationError(
            f"Template {template_id!r} needs at least {template.required_users} target user(s)"
        )

    given = dict(params or {})
    unknown = sorted(set(given) - set(template.parameters))
    if unknown:
        raise WorkflowValidationError(
            f"Unknown parameter(s) for template {template_id!r}: {', '.join(unknown)}"
        )
    values: dict[str, str] = {}
    for name, default in template.parameters.items():
        value = given.get(name, default)
        if value is None or (default is None and not value.strip()):
            raise WorkflowValidationError(
                f"Template {template_id!r} requires parameter {name!r}"
            )
        values[name] = value

    return template.build(_Request(owner=user_id, targets=targets, params=values))
