from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any


class CurrentUserResponse(BaseModel):
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)
    app_metadata: Dict[str, Any] = Field(default_factory=dict)
    is_super_user: bool = False
    permissions: List[str]  # allowed "resource:action" names
