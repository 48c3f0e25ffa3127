# -*- coding: utf-8 -*-
"""
Connector Module - Unified chat-completion connectors

This module provides:
- connector_genai: one call shape over OpenAI, generic bearer hosts and the
  two-step OAuth provider, plus the credential store and error types
"""

from .connector_genai import (
    # Errors
    SheetLLMError,
    ValidationError,
    ProviderCallFailed,
    ProviderFailureKind,
    # SSL
    SSLVerificationMode,
    resolve_ssl_verify,
    mask_secret,
    # Credentials
    DEFAULT_PROVIDER,
    ProviderCredential,
    CredentialStore,
    lookup_keyring_token,
    # Requests / responses
    SamplingParams,
    ChatRequest,
    ChatCompletion,
    ResponseShape,
    parse_openai_shape,
    parse_generic_shape,
    parse_oauth_shape,
    # Services
    GenerativeAIService,
    OpenAIService,
    GenericHostService,
    ClovaService,
    get_service_for_provider,
)

__all__ = [
    # Errors
    "SheetLLMError",
    "ValidationError",
    "ProviderCallFailed",
    "ProviderFailureKind",
    # SSL
    "SSLVerificationMode",
    "resolve_ssl_verify",
    "mask_secret",
    # Credentials
    "DEFAULT_PROVIDER",
    "ProviderCredential",
    "CredentialStore",
    "lookup_keyring_token",
    # Requests / responses
    "SamplingParams",
    "ChatRequest",
    "ChatCompletion",
    "ResponseShape",
    "parse_openai_shape",
    "parse_generic_shape",
    "parse_oauth_shape",
    # Services
    "GenerativeAIService",
    "OpenAIService",
    "GenericHostService",
    "ClovaService",
    "get_service_for_provider",
]
