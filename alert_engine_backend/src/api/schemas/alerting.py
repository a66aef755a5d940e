from __future__ import annotations

from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ReceiverConfig(BaseModel):
    """A notification receiver from the alerting config file."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, description="Unique receiver name.")
    type: Literal["webhook", "log"] = Field("webhook", description="Receiver kind.")
    url: Optional[str] = Field(default=None, description="Webhook endpoint (webhook receivers only).")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers for webhook calls.")
    send_resolved: bool = Field(True, description="Whether resolved notifications are sent to this receiver.")
    match: Dict[str, str] = Field(
        default_factory=dict, description="Only alerts carrying all of these label values go to this receiver."
    )

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


class RouteSettings(BaseModel):
    """Grouping and re-notification settings of the notification router."""

    model_config = ConfigDict(extra="forbid")

    group_by: List[str] = Field(default_factory=lambda: ["alertname"], description="Labels that form a group.")
    repeat_interval: Union[str, int, float] = Field(
        "4h", description="Minimum time between two firing notifications of the same alert."
    )


class ScrapeTarget(BaseModel):
    """An HTTP endpoint serving exposition-format metrics."""

    model_config = ConfigDict(extra="forbid")

    job: str = Field(..., min_length=1)
    url: str = Field(..., description="Full URL of the metrics endpoint.")
    labels: Dict[str, str] = Field(default_factory=dict, description="Extra labels attached to scraped samples.")

    @field_validator("url")
    @classmethod
    def _http_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("url must start with http:// or https://")
        return v


class AlertingConfigFile(BaseModel):
    """Top-level document of ALERTING_CONFIG_FILE."""

    model_config = ConfigDict(extra="forbid")

    route: RouteSettings = Field(default_factory=RouteSettings)
    receivers: List[ReceiverConfig] = Field(default_factory=list)
    scrape_targets: List[ScrapeTarget] = Field(default_factory=list)
