from fastapi import APIRouter
from pydantic import BaseModel

from roseram.services.grok import generate_page

router = APIRouter()


class GenerateRequest(BaseModel):
    prompt: str
    context: list[dict] | None = None


@router.post("/api/grok-generate")
async def grok_generate(request: GenerateRequest):
    """Generate HTML/CSS/JS for a page description."""
    result = await generate_page(request.prompt, request.context)
    return {"success": True, **result}
