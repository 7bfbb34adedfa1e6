from typing import List, Sequence

from ..contracts import ChatMessage, Integrations, Step, Blueprint

DECISION_SYSTEM_PROMPT = (
    "You are an AI agent executing a workflow step. Your job is to decide what "
    "actions to take based on the step requirements and blueprint constraints. "
    "You only decide; the workflow engine performs the actions."
)

_SENDER_PREFIX = {"user": "User", "agent": "Agent", "system": "System"}

_AVAILABLE_ACTIONS = """AVAILABLE ACTIONS:
- "complete": Mark step as done
- "send_email": Send an email (requires to, subject, body)
- "read_email": Read emails from inbox (optional count)
- "modify_email": Modify email labels (requires emailId, label)
- "guidance_requested": Ask the user a question (requires guidanceQuestion)
- "request_file_upload": Request user to upload a file (requires fileType: excel|image|document|any, fileDescription)
- "generate_image": Generate an image (requires imagePrompt describing what to create)
- "show_image_preview": Show an image to the user for approval (imageUrl, imageCaption; use "[generated]" as imageUrl for the image generated in this step)"""

_RESPONSE_SHAPE = """Return ONLY plaintext JSON with this structure:
{
  "actions": [{"type": "<action type>", "parameters": {...}}],
  "message": "Brief description of what you are doing",
  "needsGuidance": true/false,
  "guidanceQuestion": "Question if needsGuidance is true",
  "requestedFileType": "excel|image|document|any (if requesting a file)",
  "fileDescription": "What you need the file for (if requesting a file)",
  "previewImageUrl": "URL of image to preview (if showing image for approval)",
  "previewImageCaption": "Caption for the preview image"
}
No markdown, no code blocks. Raw JSON only."""


def _format_guidance(history: Sequence[ChatMessage]) -> str:
    lines: List[str] = []
    for msg in history:
        line = f"[{_SENDER_PREFIX[msg.sender]}]: {msg.text}"
        if msg.uploaded_file_name:
            line += f"\nUploaded file: {msg.uploaded_file_name}"
        if msg.excel_data:
            line += f"\nExcel Data:\n{msg.excel_data}"
        if msg.image_url:
            line += f"\nImage: {msg.image_url}"
        lines.append(line)
    return "\n\n".join(lines)


def build_decision_prompt(
    step: Step,
    blueprint: Blueprint,
    guidance_history: Sequence[ChatMessage],
    integrations: Integrations,
) -> str:
    """Render the per-step decision prompt sent to the decision model."""
    requirements = (
        step.requirements.requirements_text if step.requirements else None
    ) or "No specific requirements provided"
    green = ", ".join(blueprint.green_list) or "None specified"
    red = ", ".join(blueprint.red_list) or "None specified"

    sections = [
        f'STEP TO EXECUTE: "{step.label}"',
        f"STEP TYPE: {step.type.value}",
        f"STEP REQUIREMENTS: {requirements}",
        "BLUEPRINT CONSTRAINTS:\n"
        f"- GREEN LIST (Allowed): {green}\n"
        f"- RED LIST (Forbidden): {red}",
        "AVAILABLE INTEGRATIONS:\n"
        f"- Gmail: {'Available' if integrations.gmail else 'Not available'}",
    ]
    if guidance_history:
        sections.append(
            "USER GUIDANCE AND CONTEXT PROVIDED:\n" + _format_guidance(guidance_history)
        )
        sections.append(
            "The user has provided guidance above. Acknowledge it in your message "
            "and explain how it helps you complete this step."
        )
    sections.append(
        "RULES:\n"
        "1. If the GREEN LIST is empty and no guidance was provided, request what you need.\n"
        "2. You MUST NOT perform any action in the RED LIST.\n"
        "3. Only use email actions when Gmail is available.\n"
        "4. Be specific with action parameters."
    )
    sections.append(_AVAILABLE_ACTIONS)
    sections.append(_RESPONSE_SHAPE)
    return "\n\n".join(sections)
