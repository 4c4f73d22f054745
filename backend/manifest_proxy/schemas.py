from pydantic import BaseModel

class RegistryStats(BaseModel):
    entries: int
    max_entries: int
    ttl: float
    strategy: str

class ErrorResponse(BaseModel):
    detail: str
