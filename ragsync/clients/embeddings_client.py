import httpx


class EmbeddingsHttpError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EmbeddingsClient:
    def __init__(self, base_url: str | None = None, timeout_seconds: int | None = None):
        if base_url is None or timeout_seconds is None:
            from ragsync.core.config import settings

            base_url = base_url or settings.EMBEDDINGS_SERVICE_URL
            timeout_seconds = timeout_seconds or settings.EMBEDDINGS_TIMEOUT_SECONDS
        self.base_url = str(base_url).rstrip("/")
        self.timeout_seconds = float(timeout_seconds)

    def embed_texts(
        self,
        texts: list[str],
        model_id: str,
        correlation_id: str | None = None,
    ) -> list[list[float]]:
        if not texts:
            return []
        payload = {
            "model": model_id,
            "input": texts,
            "encoding_format": "float",
        }
        if correlation_id is not None:
            payload["correlation_id"] = correlation_id

        with httpx.Client(timeout=self.timeout_seconds) as client:
            response = client.post(f"{self.base_url}/v1/embeddings", json=payload)
            if response.status_code >= 400:
                raise EmbeddingsHttpError(
                    f"Embeddings service returned HTTP {response.status_code}",
                    status_code=response.status_code,
                )
            body = response.json()
        data = body.get("data") or []
        if len(data) != len(texts):
            raise EmbeddingsHttpError(f"Embeddings service returned {len(data)} vectors for {len(texts)} inputs")
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in ordered]
