from __future__ import annotations
import base64
import binascii
import httpx
from typing import Any, Dict, List, Optional
from .retry import remote_error
from .errors import PermanentRemoteError
from .settings import settings

class GeminiClient:
	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			# Vertex AI Generative REST endpoint (API key via header)
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		self._client = httpx.AsyncClient(timeout=settings.gemini_timeout_seconds, transport=transport)

	async def generate(self, prompt: str, *, response_schema: Optional[Dict[str, Any]] = None) -> str:
		payload: Dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
		if response_schema is not None:
			payload["generationConfig"] = _json_config(response_schema)
		data = await self._post_payload(payload)
		return _first_text(data)

	async def generate_multimodal(
		self,
		parts: List[Dict[str, Any]],
		*,
		role: str = "user",
		response_schema: Optional[Dict[str, Any]] = None,
	) -> str:
		payload: Dict[str, Any] = {"contents": [{"role": role, "parts": parts}]}
		if response_schema is not None:
			payload["generationConfig"] = _json_config(response_schema)
		data = await self._post_payload(payload)
		return _first_text(data)

	async def synthesize_speech(self, text: str, *, voice: Optional[str] = None) -> bytes:
		"""Return raw 16-bit PCM for ``text`` spoken with a prebuilt voice."""
		payload: Dict[str, Any] = {
			"contents": [{"parts": [{"text": text}]}],
			"generationConfig": {
				"responseModalities": ["AUDIO"],
				"speechConfig": {
					"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice or settings.gemini_tts_voice}},
				},
			},
		}
		data = await self._post_payload(payload)
		try:
			encoded = data["candidates"][0]["content"]["parts"][0]["inlineData"]["data"]
		except (KeyError, IndexError, TypeError):
			encoded = None
		if not encoded:
			raise PermanentRemoteError("No audio data in Gemini response")
		try:
			return base64.b64decode(encoded, validate=True)
		except (binascii.Error, ValueError) as err:
			raise PermanentRemoteError(f"Gemini returned undecodable audio data: {err}") from err

	async def _post_payload(self, payload: Dict[str, Any]) -> Dict[str, Any]:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			status = http_err.response.status_code
			body = http_err.response.text[:500]
			raise remote_error(f"Gemini request failed with status {status}: {body}") from http_err
		except httpx.RequestError as net_err:
			raise remote_error(f"Gemini request error ({type(net_err).__name__}): {net_err}") from net_err
		try:
			return r.json()
		except ValueError as err:
			raise PermanentRemoteError(f"Unexpected Gemini response: {r.text[:500]}") from err

	async def aclose(self) -> None:
		await self._client.aclose()


def _json_config(response_schema: Dict[str, Any]) -> Dict[str, Any]:
	return {"responseMimeType": "application/json", "responseSchema": response_schema}


def _first_text(data: Dict[str, Any]) -> str:
	try:
		text = data["candidates"][0]["content"]["parts"][0]["text"]
	except (KeyError, IndexError, TypeError):
		text = None
	if not text:
		raise PermanentRemoteError("No text response from Gemini")
	return text
