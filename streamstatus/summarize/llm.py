"""
LLM client: call language models via litellm.

litellm handles provider routing based on model string:
    "anthropic/claude-haiku-4-5"  -> Anthropic API
    "openai/gpt-4o-mini"         -> OpenAI API
    "deepseek/deepseek-chat"     -> DeepSeek API

Provider keys are read from the environment by litellm; see
`Config.inject_api_key()`.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, Optional

from litellm import completion

logger = logging.getLogger(__name__)

TASK_PROMPTS: Dict[str, str] = {
    "retirement_summary": (
        "You write the retrospective for a retired development stream.\n"
        "You will receive the stream's metadata, the summary its author wrote "
        "at retirement, and the current archive report.\n\n"
        "Write the body of the report's Summary section in markdown:\n"
        "- One short paragraph stating what the stream delivered.\n"
        "- A bullet list of notable changes or decisions.\n"
        "- A final bullet list of follow-ups, only if the input names any.\n\n"
        "Rules:\n"
        "- Be factual. Only include what the input supports.\n"
        "- Keep the author's summary's meaning; you may tighten the wording.\n"
        "- Do NOT include a heading. Output ONLY the markdown body, no fences."
    ),
}


def _strip_fences(content: str) -> str:
    content = content.strip()
    if content.startswith("```markdown"):
        content = content[len("```markdown"):].strip()
    if content.startswith("```"):
        content = content[3:].strip()
    if content.endswith("```"):
        content = content[:-3].strip()
    return content


def call_llm_text(
    task: str,
    user_content: str,
    *,
    model: str,
    timeout: float = 60.0,
    max_tokens: int = 2048,
) -> Optional[str]:
    """Call the LLM and return its raw text response.

    Returns None when the task is unknown, the call fails, or the model
    answers with nothing.
    """
    system_prompt = TASK_PROMPTS.get(task, "")
    if not system_prompt:
        logger.error(f"Unknown LLM task: {task}")
        return None

    logger.debug(f"LLM text call: task={task} model={model}")
    start = time.time()

    try:
        response = completion(
            model=model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_content},
            ],
            max_tokens=max_tokens,
            temperature=0.3,
            timeout=timeout,
        )
        content = response.choices[0].message.content or ""
    except Exception as e:
        elapsed = time.time() - start
        logger.error(f"LLM text call failed: task={task} error={e} elapsed={elapsed:.1f}s")
        return None

    elapsed = time.time() - start
    logger.debug(f"LLM text success: task={task} elapsed={elapsed:.1f}s")
    return _strip_fences(content) or None
