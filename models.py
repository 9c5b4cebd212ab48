from __future__ import annotations

from sqlalchemy import JSON, Boolean, Column, Index, Integer, String, Text

from db import Base


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    organizationId = Column(String, nullable=False, default="", index=True)
    email = Column(String, nullable=False, unique=True, index=True)
    displayName = Column(Text, nullable=False, default="")
    status = Column(String, nullable=False, default="active", index=True)
    # Free-form attributes; employee linking stores {"employee_id": ...} here.
    meta = Column("metadata", JSON, nullable=False, default=dict)
    createdAt = Column(Text, nullable=False, default="")
    updatedAt = Column(Text, nullable=False, default="")


class Employee(Base):
    __tablename__ = "employees"
    __table_args__ = (Index("ix_employees_org_created", "organizationId", "createdAt"),)

    id = Column(String, primary_key=True)
    organizationId = Column(String, nullable=False, index=True)
    userId = Column(String, nullable=True, index=True)
    status = Column(String, nullable=False, default="active", index=True)

    # Sub-documents, each replaced wholesale on patch.
    personalInfo = Column(JSON, nullable=False, default=dict)
    contactInfo = Column(JSON, nullable=False, default=dict)
    demographics = Column(JSON, nullable=False, default=dict)
    employmentDetails = Column(JSON, nullable=False, default=dict)
    education = Column(JSON, nullable=False, default=list)
    workExperience = Column(JSON, nullable=False, default=list)
    skills = Column(JSON, nullable=False, default=list)
    documents = Column(JSON, nullable=False, default=list)
    onboarding = Column(JSON, nullable=False, default=dict)

    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class CredentialMixin:
    """
    Shared column set for issued secrets (setup codes, magic links, refresh tokens, API keys).

    Lookups always go through `secretHash`. `secretValue` keeps the plaintext only for
    kinds whose policy allows it; otherwise it stays empty.
    """

    id = Column(String, primary_key=True)
    ownerId = Column(String, nullable=False, index=True)
    secretHash = Column(String, nullable=False, unique=True, index=True)
    secretPrefix = Column(String, nullable=False, default="", index=True)
    secretValue = Column(Text, nullable=False, default="")
    label = Column(Text, nullable=False, default="")
    # "" means the credential never expires.
    expiresAt = Column(Text, nullable=False, default="", index=True)
    used = Column(Boolean, nullable=False, default=False, index=True)
    usedAt = Column(Text, nullable=False, default="")
    createdBy = Column(String, nullable=False, default="")
    meta = Column("metadata", JSON, nullable=False, default=dict)
    lastUsedAt = Column(Text, nullable=False, default="")
    usageCount = Column(Integer, nullable=False, default=0)
    createdAt = Column(Text, nullable=False, default="", index=True)
    updatedAt = Column(Text, nullable=False, default="")


class SetupCode(CredentialMixin, Base):
    __tablename__ = "setup_codes"


class MagicLink(CredentialMixin, Base):
    __tablename__ = "magic_links"


class RefreshToken(CredentialMixin, Base):
    __tablename__ = "refresh_tokens"


class ApiKey(CredentialMixin, Base):
    __tablename__ = "api_keys"
