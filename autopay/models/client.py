"""
autopay/models/client.py

Company-facing rollups derived from plan subscriptions. Computed on read,
never persisted. Serialized with the dashboard's field names.
"""

from datetime import datetime
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


class ClientSummary(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    subscriber_address: str
    subscription_count: int = Field(serialization_alias="subscriptions")
    status: Literal["active", "inactive"]
    join_date: datetime = Field(serialization_alias="joinDate")
    last_payment: Optional[datetime] = Field(default=None, serialization_alias="lastPayment")


class DashboardStats(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    total_clients: int = Field(serialization_alias="totalClients")
    active_clients: int = Field(serialization_alias="activeClients")
    total_revenue: int = Field(serialization_alias="totalRevenue")
    total_subscriptions: int = Field(serialization_alias="totalSubscriptions")
