"""Device liveness model"""

from typing import Optional

from pydantic import BaseModel, Field


class LivenessState(BaseModel):
    device_id: str = Field(alias="deviceId")
    last_heartbeat_value: Optional[float] = Field(default=None, alias="lastHeartbeatValue")
    last_heartbeat_at: Optional[int] = Field(default=None, alias="lastHeartbeatAt")  # epoch ms
    online: bool = False
    last_transition_at: Optional[int] = Field(default=None, alias="lastTransitionAt")

    class Config:
        populate_by_name = True

    @property
    def ever_seen(self) -> bool:
        return self.last_heartbeat_at is not None

    def age_ms(self, now: int) -> Optional[int]:
        if self.last_heartbeat_at is None:
            return None
        return now - self.last_heartbeat_at
