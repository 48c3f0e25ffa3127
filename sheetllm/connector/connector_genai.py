"""
Connector Gen AI - Unified Chat Completion Connector

Provides one call shape over the chat-completion backends a sheet operation can
target. Every service receives a normalized ChatRequest and returns a
ChatCompletion whose text is already trimmed.

Supported Providers:
    - OpenAIService: api.openai.com through the official SDK (bearer token)
    - GenericHostService: any user-supplied URL speaking an OpenAI-like body
    - ClovaService: two-step OAuth (client id/secret -> access token -> chat)

All calls are non-blocking (httpx.AsyncClient), enforce a per-call timeout and
never retry. Any failure surfaces as ProviderCallFailed.

Example:
    >>> async with httpx.AsyncClient() as client:
    ...     service = OpenAIService(model_name="gpt-4o-mini", api_key="sk-...", client=client)
    ...     completion = await service.generate_completion(ChatRequest(model="gpt-4o-mini", user="Hello!"))
    ...     print(completion.text)

License: MIT
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
import os
import ssl
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Union

import certifi
import httpx
import openai

logger = logging.getLogger("SheetLLM.Connector")


# --- Errors ---

class SheetLLMError(Exception):
    """Base class for all errors raised by SheetLLM."""


class ValidationError(SheetLLMError):
    """A request is malformed or misses a field, a credential or a host."""


class ProviderFailureKind(Enum):
    """Why a single provider call failed."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    HTTP_STATUS = "http_status"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER_STATUS = "provider_status"
    AUTH = "auth"


class ProviderCallFailed(SheetLLMError):
    """
    A single provider call did not produce assistant text.

    Attributes:
        kind: Category of the failure.
        status: HTTP status code, when a response was received.
        body: Raw response body, when one was received.
    """

    def __init__(self, message: str, kind: ProviderFailureKind,
                 status: Optional[int] = None, body: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.status = status
        self.body = body

    def __repr__(self) -> str:
        return f"ProviderCallFailed(kind={self.kind.value!r}, status={self.status!r}, message={str(self)!r})"


# --- SSL Configuration ---

class SSLVerificationMode(Enum):
    """
    Enumeration for SSL verification modes.

    INSECURE: Disables SSL verification (for development/testing only)
    CERTIFI: Uses certifi package for certificate validation (recommended for production)
    CUSTOM: Uses a custom certificate file path
    """
    INSECURE = "insecure"
    CERTIFI = "certifi"
    CUSTOM = "custom"


def resolve_ssl_verify(mode: Union[SSLVerificationMode, str] = SSLVerificationMode.CERTIFI,
                       custom_cert_path: Optional[str] = None) -> Union[bool, ssl.SSLContext]:
    """
    Resolves an SSL verification mode into the ``verify`` argument of httpx.

    Args:
        mode: SSL verification mode (INSECURE, CERTIFI, or CUSTOM)
        custom_cert_path: Path to custom certificate file (required if mode=CUSTOM)

    Returns:
        False, or an SSL context verifying against the selected CA bundle.

    Raises:
        ValueError: If CUSTOM mode is selected but no certificate path is provided
        FileNotFoundError: If custom certificate file does not exist
    """
    if isinstance(mode, str):
        mode = SSLVerificationMode(mode.lower())

    if mode == SSLVerificationMode.INSECURE:
        logger.warning("SSL verification DISABLED - use only for development")
        return False

    if mode == SSLVerificationMode.CERTIFI:
        return ssl.create_default_context(cafile=certifi.where())

    if not custom_cert_path:
        raise ValueError("custom_cert_path must be provided when using CUSTOM mode")
    if not os.path.exists(custom_cert_path):
        raise FileNotFoundError(f"Certificate file not found: {custom_cert_path}")
    return ssl.create_default_context(cafile=custom_cert_path)


def mask_secret(value: Optional[str]) -> str:
    """Returns a secret masked for logs (first 4 and last 4 characters)."""
    if not value:
        return "Not set"
    if len(value) <= 8:
        return "****"
    return f"{value[:4]}...{value[-4:]}"


# --- Credentials ---

DEFAULT_PROVIDER = "openai"


@dataclass
class ProviderCredential:
    """
    Credential for one completion backend.

    Attributes:
        name: Provider name (e.g. "openai", "clova", "my-host").
        bearer_token: Bearer token; may be empty for the default provider.
        client_id: OAuth client id (two-step providers only).
        client_secret: OAuth client secret (two-step providers only).
    """
    name: str
    bearer_token: str = ""
    client_id: Optional[str] = None
    client_secret: Optional[str] = None

    def __repr__(self) -> str:
        return (f"ProviderCredential(name={self.name!r}, "
                f"bearer_token={mask_secret(self.bearer_token)!r}, "
                f"client_id={mask_secret(self.client_id)!r})")


def lookup_keyring_token(provider: str) -> Optional[str]:
    """Reads a provider token from the OS credential store, if one is there."""
    try:
        import keyring
        token = keyring.get_password(provider.lower(), "api_key")
    except Exception as e:
        logger.debug(f"Keyring lookup failed for '{provider}': {e}")
        return None
    if token:
        logger.info(f"API key loaded from keyring for '{provider}'")
    return token or None


class CredentialStore:
    """
    Read-only-during-a-run set of provider credentials, one per provider name.

    The default provider ("openai") is always present, possibly with an empty
    token, and cannot be removed.
    """

    def __init__(self, credentials: Optional[Iterable[ProviderCredential]] = None,
                 keyring_fallback: bool = False):
        self._credentials: Dict[str, ProviderCredential] = {
            DEFAULT_PROVIDER: ProviderCredential(name=DEFAULT_PROVIDER)
        }
        self.keyring_fallback = keyring_fallback
        for credential in credentials or []:
            self.set(credential)

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]],
                     keyring_fallback: bool = False) -> CredentialStore:
        """
        Builds a store from the JSON sent by the browser.

        Accepts ``{"providers": [{"name", "bearerToken", "clientId", "clientSecret"}]}``
        and the flat legacy keys ``OPENAI_API_KEY``, ``CLIENT_ID`` and ``CLIENT_SECRET``.
        """
        store = cls(keyring_fallback=keyring_fallback)
        if not payload:
            return store
        if not isinstance(payload, dict):
            raise ValidationError("credentials must be an object")

        for entry in payload.get("providers") or []:
            if not isinstance(entry, dict):
                raise ValidationError("Each provider credential must be an object")
            name = str(entry.get("name") or "").strip()
            if not name:
                continue
            store.set(ProviderCredential(
                name=name,
                bearer_token=entry.get("bearerToken") or "",
                client_id=entry.get("clientId") or None,
                client_secret=entry.get("clientSecret") or None,
            ))

        if payload.get("OPENAI_API_KEY"):
            store.set(ProviderCredential(name=DEFAULT_PROVIDER, bearer_token=payload["OPENAI_API_KEY"]))
        if payload.get("CLIENT_ID") or payload.get("CLIENT_SECRET"):
            store.set(ProviderCredential(
                name="clova",
                client_id=payload.get("CLIENT_ID") or None,
                client_secret=payload.get("CLIENT_SECRET") or None,
            ))
        return store

    def to_payload(self) -> Dict[str, Any]:
        """Serializes the store in the ``{"providers": [...]}`` form accepted by from_payload."""
        providers = []
        for credential in self:
            entry: Dict[str, Any] = {"name": credential.name, "bearerToken": credential.bearer_token}
            if credential.client_id:
                entry["clientId"] = credential.client_id
            if credential.client_secret:
                entry["clientSecret"] = credential.client_secret
            providers.append(entry)
        return {"providers": providers}

    def set(self, credential: ProviderCredential) -> None:
        """Adds or replaces the credential for ``credential.name``."""
        self._credentials[credential.name.lower()] = credential

    def get(self, name: str) -> Optional[ProviderCredential]:
        return self._credentials.get(name.lower())

    def remove(self, name: str) -> None:
        if name.lower() == DEFAULT_PROVIDER:
            raise ValidationError(f"The default provider '{DEFAULT_PROVIDER}' cannot be removed")
        self._credentials.pop(name.lower(), None)

    def names(self) -> List[str]:
        return list(self._credentials)

    def resolve(self, name: str) -> ProviderCredential:
        """
        Returns the credential for ``name``, consulting the keyring for an empty token.

        Raises:
            ValidationError: If no credential is registered under ``name``.
        """
        credential = self.get(name)
        if credential is None:
            raise ValidationError(f'Selected provider "{name}" not found')
        if not credential.bearer_token and self.keyring_fallback:
            token = lookup_keyring_token(credential.name)
            if token:
                credential = ProviderCredential(
                    name=credential.name,
                    bearer_token=token,
                    client_id=credential.client_id,
                    client_secret=credential.client_secret,
                )
        return credential

    def __contains__(self, name: str) -> bool:
        return name.lower() in self._credentials

    def __iter__(self) -> Iterator[ProviderCredential]:
        return iter(self._credentials.values())

    def __len__(self) -> int:
        return len(self._credentials)

    def __repr__(self) -> str:
        return f"CredentialStore(providers={self.names()})"


# --- Requests and responses ---

@dataclass
class SamplingParams:
    """Sampling parameters; fields left as None are not sent."""
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    top_k: Optional[int] = None
    repeat_penalty: Optional[float] = None
    seed: Optional[int] = None
    stop_before: List[str] = field(default_factory=list)

    def openai_fields(self) -> Dict[str, Any]:
        """Fields understood by OpenAI-style bodies."""
        values = {
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "frequency_penalty": self.frequency_penalty,
            "presence_penalty": self.presence_penalty,
        }
        return {k: v for k, v in values.items() if v is not None}


@dataclass
class ChatRequest:
    """Normalized chat request: one optional system turn and one user turn."""
    model: str
    user: str
    system: Optional[str] = None
    sampling: SamplingParams = field(default_factory=SamplingParams)

    def messages(self) -> List[Dict[str, str]]:
        messages = []
        if self.system is not None:
            messages.append({"role": "system", "content": self.system})
        messages.append({"role": "user", "content": self.user})
        return messages


class ResponseShape(Enum):
    """Response envelopes returned by the supported backends."""
    OPENAI = "openai"
    GENERIC = "generic"
    OAUTH = "oauth"


@dataclass(frozen=True)
class ChatCompletion:
    """Normalized completion: the trimmed assistant text and the envelope it came from."""
    text: str
    shape: ResponseShape
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)


OAUTH_SUCCESS_CODE = "20000"
OPENAI_BASE_URL = "https://api.openai.com/v1"
CLOVA_TOKEN_URL = "https://clovastudio.apigw.ntruss.com/v1/auth/token"
CLOVA_HOST = "clovastudio.apigw.ntruss.com"


def _dig(node: Any, *path: Union[str, int]) -> Any:
    for step in path:
        if isinstance(step, int):
            if not isinstance(node, list) or len(node) <= step:
                return None
        elif not isinstance(node, dict):
            return None
        node = node[step] if isinstance(step, int) else node.get(step)
    return node


def _malformed(shape: ResponseShape, body: Any) -> ProviderCallFailed:
    return ProviderCallFailed(
        f"Unexpected response format ({shape.value}): {json.dumps(body, ensure_ascii=False)[:500]}",
        ProviderFailureKind.MALFORMED_RESPONSE,
        body=json.dumps(body, ensure_ascii=False),
    )


def parse_openai_shape(body: Any) -> ChatCompletion:
    """Reads ``choices[0].message.content``."""
    content = _dig(body, "choices", 0, "message", "content")
    if not isinstance(content, str) or not content:
        raise _malformed(ResponseShape.OPENAI, body)
    return ChatCompletion(text=content.strip(), shape=ResponseShape.OPENAI, raw=body)


def parse_generic_shape(body: Any) -> ChatCompletion:
    """
    Reads ``choices[0].message.content`` and falls back to ``result.message.content``.

    When both are present the OpenAI-compatible field wins; a disagreement is
    logged rather than merged.
    """
    choices_content = _dig(body, "choices", 0, "message", "content")
    result_content = _dig(body, "result", "message", "content")

    if isinstance(choices_content, str) and choices_content:
        if isinstance(result_content, str) and result_content and result_content != choices_content:
            logger.warning("Generic host returned both 'choices' and 'result' content that disagree; "
                           "using 'choices'")
        return ChatCompletion(text=choices_content.strip(), shape=ResponseShape.GENERIC, raw=body)
    if isinstance(result_content, str) and result_content:
        return ChatCompletion(text=result_content.strip(), shape=ResponseShape.GENERIC, raw=body)
    raise _malformed(ResponseShape.GENERIC, body)


def parse_oauth_shape(body: Any) -> ChatCompletion:
    """Requires ``status.code == "20000"`` and ``result.message.content``."""
    code = _dig(body, "status", "code")
    if str(code) != OAUTH_SUCCESS_CODE:
        message = _dig(body, "status", "message") or "unknown status"
        raise ProviderCallFailed(
            f"Provider returned status {code}: {message}",
            ProviderFailureKind.PROVIDER_STATUS,
            body=json.dumps(body, ensure_ascii=False),
        )
    content = _dig(body, "result", "message", "content")
    if not isinstance(content, str) or not content:
        raise _malformed(ResponseShape.OAUTH, body)
    return ChatCompletion(text=content.strip(), shape=ResponseShape.OAUTH, raw=body)


RESPONSE_PARSERS = {
    ResponseShape.OPENAI: parse_openai_shape,
    ResponseShape.GENERIC: parse_generic_shape,
    ResponseShape.OAUTH: parse_oauth_shape,
}


# --- Base Class ---

class GenerativeAIService(ABC):
    """
    Abstract base class for chat-completion backends.

    Subclasses declare the ``response_shape`` they return and implement
    ``generate_completion``. All network I/O goes through the shared
    httpx.AsyncClient passed in by the caller.
    """
    response_shape: ResponseShape = ResponseShape.OPENAI

    def __init__(self, model_name: str, client: httpx.AsyncClient, timeout: float = 60.0):
        if not model_name:
            raise ValidationError("A model_name must be provided.")
        self._model_name = model_name
        self._client = client
        self._timeout = timeout

    @property
    def model_name(self) -> str:
        """Returns the name of the model being used."""
        return self._model_name

    @property
    def timeout(self) -> float:
        return self._timeout

    @property
    def provider(self) -> str:
        """Returns the name of the AI provider (derived from class name)."""
        return self.__class__.__name__.replace("Service", "")

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(model='{self.model_name}', timeout={self.timeout})"

    def parse_response(self, body: Any) -> ChatCompletion:
        return RESPONSE_PARSERS[self.response_shape](body)

    async def _send(self, method: str, url: str, headers: Dict[str, str],
                    payload: Optional[Dict[str, Any]] = None,
                    params: Optional[Dict[str, str]] = None) -> Any:
        """Sends one request and returns the decoded JSON body."""
        logger.debug(f"{method} {url} payload={json.dumps(payload, ensure_ascii=False) if payload else ''}")
        try:
            response = await self._client.request(
                method, url, headers=headers, json=payload, params=params, timeout=self._timeout
            )
        except httpx.TimeoutException as e:
            raise ProviderCallFailed(
                f"Request to {url} timed out after {self._timeout}s", ProviderFailureKind.TIMEOUT
            ) from e
        except httpx.HTTPError as e:
            raise ProviderCallFailed(
                f"Error connecting to {url}: {e}", ProviderFailureKind.NETWORK
            ) from e

        logger.debug(f"Response status: {response.status_code}")
        if response.is_error:
            raise ProviderCallFailed(
                f"HTTP {response.status_code} from {url}",
                ProviderFailureKind.HTTP_STATUS,
                status=response.status_code,
                body=response.text,
            )
        try:
            return response.json()
        except ValueError as e:
            raise ProviderCallFailed(
                f"Response from {url} is not valid JSON",
                ProviderFailureKind.MALFORMED_RESPONSE,
                status=response.status_code,
                body=response.text,
            ) from e

    @abstractmethod
    async def generate_completion(self, request: ChatRequest) -> ChatCompletion:
        """Runs one chat completion and returns the normalized result."""


# --- Concrete Implementations ---

class OpenAIService(GenerativeAIService):
    """OpenAI chat completions through the official async SDK."""
    response_shape = ResponseShape.OPENAI

    def __init__(self, model_name: str, api_key: str, client: httpx.AsyncClient,
                 timeout: float = 60.0, base_url: str = OPENAI_BASE_URL):
        super().__init__(model_name, client, timeout)
        if not api_key:
            raise ValidationError("OpenAI API key is not provided")
        self._base_url = base_url.rstrip('/')
        self._sdk = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self._base_url,
            timeout=timeout,
            max_retries=0,
            http_client=client,
        )

    @property
    def base_url(self) -> str:
        return self._base_url

    async def generate_completion(self, request: ChatRequest) -> ChatCompletion:
        try:
            raw = await self._sdk.chat.completions.with_raw_response.create(
                model=request.model,
                messages=request.messages(),
                **request.sampling.openai_fields(),
            )
        except openai.APITimeoutError as e:
            raise ProviderCallFailed(
                f"OpenAI request timed out after {self._timeout}s", ProviderFailureKind.TIMEOUT
            ) from e
        except openai.APIConnectionError as e:
            raise ProviderCallFailed(
                f"Error connecting to {self._base_url}: {e}", ProviderFailureKind.NETWORK
            ) from e
        except openai.APIStatusError as e:
            raise ProviderCallFailed(
                f"HTTP {e.status_code} from OpenAI: {e.message}",
                ProviderFailureKind.HTTP_STATUS,
                status=e.status_code,
                body=e.response.text,
            ) from e

        try:
            body = json.loads(raw.text)
        except ValueError as e:
            raise ProviderCallFailed(
                "OpenAI response is not valid JSON",
                ProviderFailureKind.MALFORMED_RESPONSE,
                status=raw.status_code,
                body=raw.text,
            ) from e
        return self.parse_response(body)


class GenericHostService(GenerativeAIService):
    """Any bearer-token host that accepts an OpenAI-like body at a user-supplied URL."""
    response_shape = ResponseShape.GENERIC

    def __init__(self, model_name: str, host_url: str, bearer_token: str,
                 client: httpx.AsyncClient, timeout: float = 60.0):
        super().__init__(model_name, client, timeout)
        if not host_url:
            raise ValidationError("A host URL is required for this provider")
        self._host_url = host_url
        self.headers = {
            "Authorization": f"Bearer {bearer_token}",
            "Content-Type": "application/json",
        }

    @property
    def host_url(self) -> str:
        return self._host_url

    async def generate_completion(self, request: ChatRequest) -> ChatCompletion:
        payload = {
            "model": request.model,
            "messages": request.messages(),
            **request.sampling.openai_fields(),
        }
        body = await self._send("POST", self._host_url, self.headers, payload)
        return self.parse_response(body)


class ClovaService(GenerativeAIService):
    """
    Two-step OAuth provider.

    The client id/secret pair is exchanged (HTTP Basic) for a short-lived
    access token, which is then sent as a bearer token to
    ``https://<host>/v1/chat-completions/<model>``. The token is fetched once
    per service instance.
    """
    response_shape = ResponseShape.OAUTH

    def __init__(self, model_name: str, client_id: str, client_secret: str,
                 client: httpx.AsyncClient, timeout: float = 60.0,
                 token_url: str = CLOVA_TOKEN_URL,
                 host: str = CLOVA_HOST):
        super().__init__(model_name, client, timeout)
        if not client_id or not client_secret:
            raise ValidationError("Client ID and client secret are required for this provider")
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._host = host.rstrip('/')
        self._access_token: Optional[str] = None
        self._token_lock: Optional[asyncio.Lock] = None

    @property
    def endpoint(self) -> str:
        return f"https://{self._host}/v1/chat-completions/{self.model_name}"

    def _basic_auth(self) -> str:
        pair = f"{self._client_id}:{self._client_secret}".encode("utf-8")
        return "Basic " + base64.b64encode(pair).decode("ascii")

    async def fetch_access_token(self) -> str:
        """Exchanges the client credentials for an access token."""
        body = await self._send(
            "GET", self._token_url,
            headers={"Authorization": self._basic_auth()},
            params={"existingToken": "true"},
        )
        token = _dig(body, "result", "accessToken")
        if not isinstance(token, str) or not token:
            raise ProviderCallFailed(
                "Token endpoint did not return an access token",
                ProviderFailureKind.AUTH,
                body=json.dumps(body, ensure_ascii=False),
            )
        logger.debug(f"Access token acquired: {mask_secret(token)}")
        return token

    async def _token(self) -> str:
        # Concurrent rows share a single token exchange
        if self._token_lock is None:
            self._token_lock = asyncio.Lock()
        async with self._token_lock:
            if self._access_token is None:
                self._access_token = await self.fetch_access_token()
        return self._access_token

    def build_payload(self, request: ChatRequest) -> Dict[str, Any]:
        sampling = request.sampling
        return {
            "messages": request.messages(),
            "maxTokens": sampling.max_tokens if sampling.max_tokens is not None else 400,
            "temperature": sampling.temperature if sampling.temperature is not None else 0.5,
            "topK": sampling.top_k if sampling.top_k is not None else 0,
            "topP": sampling.top_p if sampling.top_p is not None else 0.8,
            "repeatPenalty": sampling.repeat_penalty if sampling.repeat_penalty is not None else 5.0,
            "stopBefore": list(sampling.stop_before),
            "includeAiFilters": True,
            "seed": sampling.seed if sampling.seed is not None else 0,
        }

    async def generate_completion(self, request: ChatRequest) -> ChatCompletion:
        token = await self._token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }
        body = await self._send("POST", self.endpoint, headers, self.build_payload(request))
        return self.parse_response(body)


# --- Factory ---

def get_service_for_provider(
    provider: str,
    model: str,
    credentials: CredentialStore,
    client: httpx.AsyncClient,
    host_url: Optional[str] = None,
    config: Optional[Any] = None,
) -> GenerativeAIService:
    """
    Factory function that returns the appropriate service for a provider.

    Args:
        provider: Provider name ("openai", "clova" or any name registered with a bearer token)
        model: Model name to use
        credentials: Credential store for the current session
        client: Shared async HTTP client
        host_url: User-supplied URL; when given, bearer providers post there
        config: Optional sheetllm Config for timeouts and endpoints

    Raises:
        ValidationError: If the provider, its credential or its host is missing
    """
    if not provider:
        raise ValidationError("A provider must be selected")
    if not model:
        raise ValidationError("Model name is not provided")

    def setting(key: str, default: Any) -> Any:
        value = config.get(key) if config is not None else None
        return default if value in (None, "") else value

    timeout = float(setting('http.timeout', 60.0))
    provider_lower = provider.lower()
    credential = credentials.resolve(provider_lower)

    if provider_lower == "clova":
        return ClovaService(
            model_name=model,
            client_id=credential.client_id or "",
            client_secret=credential.client_secret or "",
            client=client,
            timeout=timeout,
            token_url=setting('providers.clova.token_url', CLOVA_TOKEN_URL),
            host=setting('providers.clova.host', CLOVA_HOST),
        )
    if host_url:
        return GenericHostService(
            model_name=model,
            host_url=host_url,
            bearer_token=credential.bearer_token,
            client=client,
            timeout=timeout,
        )
    if provider_lower == DEFAULT_PROVIDER:
        return OpenAIService(
            model_name=model,
            api_key=credential.bearer_token,
            client=client,
            timeout=timeout,
            base_url=setting('providers.openai.base_url', OPENAI_BASE_URL),
        )
    raise ValidationError(f'A host URL is required for provider "{provider}"')
