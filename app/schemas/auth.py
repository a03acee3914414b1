from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.my_base_model import CustomBaseModel


class ChallengeResponse(CustomBaseModel):
    """Response model for challenge issuance - output"""

    message: str = ""
    expires_at: int = 0


class LoginRequest(BaseModel):
    """Request model for wallet login - input validation"""

    wallet_address: str = Field(..., description="Wallet address")
    signature: str = Field(..., description="Signature of the challenge message")
    message: str = Field(..., description="The challenge message that was signed")
    key: Optional[str] = Field(None, description="Public key, required for Cardano wallets")


class LoginResponse(CustomBaseModel):
    """Response model for a new session - output"""

    session_id: str = ""
    expires_at: int = 0
    wallet_address: str = ""
    access_token: str = ""
    token_type: str = "bearer"


class LogoutRequest(BaseModel):
    """Request model for logout - input validation"""

    session_id: str = Field(..., description="Session to revoke")


class SessionResponse(CustomBaseModel):
    """Response model for the current session - output"""

    wallet_address: str = ""
    created_at: int = 0
    expires_at: int = 0
