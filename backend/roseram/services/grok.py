import os
import re
import time
import logging

from openai import AsyncOpenAI

from roseram.errors import ExternalServiceError, ValidationError

logger = logging.getLogger(__name__)

GROK_API_URL = "https://api.x.ai/v1"
GROK_MODEL = os.getenv("GROK_MODEL", "grok-4")
MAX_PROMPT_LENGTH = 10_000

CODE_GENERATION_PROMPT = """You are an expert web developer. Generate production-ready HTML, CSS, and JavaScript code based on user prompts.

Format your response with code blocks:
```html
<!-- HTML code here -->
```

```css
/* CSS code here */
```

```javascript
// JavaScript code here
```

Include metadata in your response:
Framework: React/Vue/Vanilla (specify which you used)
Dependencies: List any required npm packages

Always generate clean, accessible, and responsive code."""

DEFAULT_HTML = '<div class="generated-content"></div>'
DEFAULT_CSS = 'body { font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto; }'
DEFAULT_JS = 'console.log("Ready");'

_HTML_BLOCK = re.compile(r"```html\n(.*?)```", re.DOTALL)
_CSS_BLOCK = re.compile(r"```css\n(.*?)```", re.DOTALL)
_JS_BLOCK = re.compile(r"```(?:javascript|js)\n(.*?)```", re.DOTALL)
_FRAMEWORK = re.compile(r"Framework:\s*([^\n]+)", re.IGNORECASE)
_DEPENDENCIES = re.compile(r"Dependencies:\s*([^\n]+)", re.IGNORECASE)


def _extract_usage(response) -> dict:
    usage = getattr(response, "usage", None)
    tokens_in = getattr(usage, "prompt_tokens", 0) if usage else 0
    tokens_out = getattr(usage, "completion_tokens", 0) if usage else 0
    return {"tokens_in": tokens_in or 0, "tokens_out": tokens_out or 0}


_client: AsyncOpenAI | None = None


def get_grok_client() -> AsyncOpenAI:
    global _client
    api_key = os.getenv("X_API_KEY", "")
    if not api_key:
        raise ExternalServiceError("Grok API", "X_API_KEY is not configured")
    if _client is None:
        _client = AsyncOpenAI(base_url=GROK_API_URL, api_key=api_key, timeout=30.0)
    return _client


def extract_code_blocks(text: str) -> dict:
    """Split a model reply into html/css/javascript plus framework and dependency hints."""
    html = _HTML_BLOCK.search(text)
    css = _CSS_BLOCK.search(text)
    js = _JS_BLOCK.search(text)
    framework = _FRAMEWORK.search(text)
    deps_match = _DEPENDENCIES.search(text)

    dependencies = [d.strip() for d in deps_match.group(1).split(",") if d.strip()] if deps_match else []
    return {
        "html": html.group(1).strip() if html else DEFAULT_HTML,
        "css": css.group(1).strip() if css else DEFAULT_CSS,
        "javascript": js.group(1).strip() if js else DEFAULT_JS,
        "framework": framework.group(1).strip() if framework else None,
        "dependencies": dependencies or None,
    }


async def generate_page(prompt: str, context: list[dict] | None = None, model: str = GROK_MODEL) -> dict:
    if not prompt or not prompt.strip():
        raise ValidationError("Prompt cannot be empty")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompt is too long (max {MAX_PROMPT_LENGTH} characters)")

    client = get_grok_client()
    messages = [
        {"role": "system", "content": CODE_GENERATION_PROMPT},
        *(context or []),
        {"role": "user", "content": prompt},
    ]

    logger.info(f"[grok] Generating page with {model}, {len(prompt)} chars prompt")
    t_start = time.time()
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=0.7,
            max_tokens=2000,
            top_p=0.9,
        )
    except Exception as e:
        logger.error(f"[grok] Request failed: {e}")
        raise ExternalServiceError("Grok API", "Failed to call Grok API", {"details": str(e)}) from e

    content = response.choices[0].message.content if response.choices else ""
    if not content:
        raise ExternalServiceError("Grok API", "No content returned from API")

    usage = _extract_usage(response)
    logger.info(
        f"[grok] Generated in {time.time() - t_start:.1f}s | "
        f"tokens in={usage['tokens_in']} out={usage['tokens_out']}"
    )
    return {
        **extract_code_blocks(content),
        "tokens_used": usage["tokens_in"] + usage["tokens_out"],
        "model": model,
    }
