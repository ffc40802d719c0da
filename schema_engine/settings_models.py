from __future__ import annotations
from typing import Optional, Dict, List
from sqlmodel import SQLModel, Field, Column, JSON

DEFAULT_DOMAINS = ["Corporate", "Beer", "Pub"]

class Settings(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)

    # Generation provider defaults
    provider: str = Field(default="dummy")
    provider_model: Optional[str] = Field(default=None)
    provider_host: Optional[str] = Field(default=None)

    # Canonical domain list; page types hang off these
    domains: List[str] = Field(sa_column=Column(JSON), default_factory=lambda: list(DEFAULT_DOMAINS))

    # Domain -> site base URL, used to turn a stored path into a fetchable URL
    domain_hosts: Dict[str, str] = Field(sa_column=Column(JSON), default_factory=dict)

    # Batch default: re-process pages that already exist (True) or skip them
    overwrite_existing: bool = Field(default=True)

    # Field expectations used by the validator
    required_fields: List[str] = Field(sa_column=Column(JSON), default_factory=lambda: ["@context", "@type", "name", "url"])
    recommended_fields: List[str] = Field(sa_column=Column(JSON), default_factory=lambda: ["description", "inLanguage", "isPartOf", "publisher", "dateModified"])
