"""
Contract, profile and billing request models
"""
from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


ContractType = Literal["employment", "service", "nda", "partnership", "lease", "other"]
ContractStatus = Literal["uploaded", "analyzing", "completed", "failed"]


class ContractUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    title: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    contract_type: Optional[ContractType] = None


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    full_name: Optional[str] = Field(default=None, max_length=200)
    company: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=50)
    preferences: Optional[dict] = None


class SubscriptionUpgradeRequest(BaseModel):
    subscription_type: Optional[Literal["basic", "premium", "professional", "enterprise"]] = None


class CheckoutRequest(BaseModel):
    plan_type: Literal["basic", "professional", "enterprise"]
    billing_cycle: Literal["monthly", "yearly"] = "monthly"


class AuthCallbackRequest(BaseModel):
    access_token: str = Field(min_length=1)
