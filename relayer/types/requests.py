from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class IntentRequest(BaseModel):
    """Signed intent body. Fields stay loosely typed; the intent validator owns the checks."""

    model_config = ConfigDict(extra="allow")

    kind: Optional[str] = Field(default=None, description="meta_transaction or native_transfer (inferred when omitted)")
    submitterContractAddress: Optional[Any] = Field(default=None, description="Verifier contract the intent targets")
    userAddress: Optional[Any] = Field(default=None, description="Address that signed the intent")
    payload: Optional[Any] = Field(default=None, description="Hex-encoded call the verifier executes for the user")
    r: Optional[Any] = Field(default=None, description="Signature r (32 bytes hex)")
    s: Optional[Any] = Field(default=None, description="Signature s (32 bytes hex)")
    v: Optional[Any] = Field(default=None, description="Signature v (27 or 28)")
    declaredNonce: Optional[Any] = Field(default=None, description="Nonce the user signed over")
    network: Optional[Any] = Field(default=None, description="Network name, e.g. amoy")
    to: Optional[Any] = Field(default=None, description="Native transfer recipient")
    amount: Optional[Any] = Field(default=None, description="Native transfer amount in wei")
    deadline: Optional[Any] = Field(default=None, description="Native transfer deadline (unix seconds)")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class SubmitRequest(IntentRequest):
    pass


class EstimateFeeRequest(IntentRequest):
    pass
