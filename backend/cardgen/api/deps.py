from typing import Annotated, Optional

from fastapi import Depends, Header, HTTPException, Request

from cardgen.services.generation import FlashcardGenerator


def get_generator(request: Request) -> FlashcardGenerator:
    generator: Optional[FlashcardGenerator] = getattr(request.app.state, "generator", None)
    if generator is None:
        raise HTTPException(status_code=500, detail="Upstream API key is not configured")
    return generator


def get_caller_id(x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None) -> str:
    # The authentication layer in front of this service sets X-User-Id.
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing or invalid authentication token")
    return x_user_id.strip()


GeneratorDep = Annotated[FlashcardGenerator, Depends(get_generator)]
CallerIdDep = Annotated[str, Depends(get_caller_id)]
