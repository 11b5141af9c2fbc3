"""Check connectivity to the services the pipeline calls. Run: python scripts/check_services.py"""

from __future__ import annotations

import os
import sys

if os.path.basename(os.getcwd()) == "scripts":
    os.chdir(os.path.dirname(os.getcwd()))

from dotenv import load_dotenv

load_dotenv()

import requests

TIMEOUT = 30
failures = 0


def report(name: str, ok: bool, message: str) -> None:
    global failures
    print("%-16s %s  %s" % (name, "OK    " if ok else "FAILED", message))
    if not ok:
        failures += 1


# Embeddings
embedding_backend = os.environ.get("CONTEXTFORGE_EMBEDDING_BACKEND", "openai").strip().lower()
if embedding_backend == "openai":
    key = os.environ.get("OPENAI_API_KEY", "").strip()
    url = os.environ.get("OPENAI_EMBEDDING_URL", "https://api.openai.com/v1/embeddings")
    model = os.environ.get("OPENAI_EMBEDDING_MODEL", "text-embedding-3-large")
    dims = int(os.environ.get("OPENAI_EMBEDDING_DIMENSIONS", "1536"))
    if not key:
        report("embeddings", False, "OPENAI_API_KEY is not set (or use CONTEXTFORGE_EMBEDDING_BACKEND=local)")
    else:
        try:
            r = requests.post(
                url,
                json={"input": "hello", "model": model, "dimensions": dims},
                headers={"Authorization": "Bearer %s" % key},
                timeout=TIMEOUT,
            )
            r.raise_for_status()
            vector = r.json()["data"][0]["embedding"]
            report("embeddings", len(vector) == dims, "%s returned %d dimensions" % (model, len(vector)))
        except (requests.RequestException, KeyError, IndexError, ValueError) as e:
            report("embeddings", False, str(e))
else:
    report("embeddings", True, "local sentence-transformers backend (loaded on first use)")

# Expansion LLM
expansion_backend = os.environ.get("CONTEXTFORGE_EXPANSION_BACKEND", "ollama").strip().lower()
if expansion_backend == "ollama":
    url = os.environ.get("OLLAMA_URL", "http://localhost:11434").rstrip("/")
    model = os.environ.get("OLLAMA_MODEL", "llama3")
    try:
        r = requests.post(
            url + "/api/generate",
            json={"model": model, "prompt": "Say hello in one word.", "stream": False},
            timeout=TIMEOUT,
        )
        r.raise_for_status()
        report("ollama", True, "%s replied %r" % (model, r.json().get("response", "")[:40]))
    except requests.ConnectionError:
        report("ollama", False, "cannot connect to %s (run: ollama run %s)" % (url, model))
    except (requests.RequestException, ValueError) as e:
        report("ollama", False, str(e))
else:
    key = os.environ.get("HF_API_KEY", "").strip()
    report("huggingface", bool(key), "HF_API_KEY is set" if key else "HF_API_KEY is not set")

# Knowledge store
url = os.environ.get("SUPABASE_URL", "").rstrip("/")
key = os.environ.get("SUPABASE_KEY", "").strip()
if not url or not key:
    report("knowledge store", False, "SUPABASE_URL / SUPABASE_KEY not set")
else:
    try:
        r = requests.get(
            url + "/rest/v1/company_os",
            params={"select": "company_id", "limit": "1"},
            headers={"apikey": key, "Authorization": "Bearer %s" % key},
            timeout=TIMEOUT,
        )
        r.raise_for_status()
        report("knowledge store", True, url)
    except requests.RequestException as e:
        report("knowledge store", False, str(e))

# Rerank service
key = os.environ.get("COHERE_API_KEY", "").strip()
if not key:
    report("rerank", False, "COHERE_API_KEY not set (bm25/cross_encoder strategies still work)")
else:
    try:
        r = requests.post(
            os.environ.get("COHERE_RERANK_URL", "https://api.cohere.com/v1/rerank"),
            json={"model": "rerank-english-v3.0", "query": "hello", "documents": ["hello", "bye"], "top_n": 1},
            headers={"Authorization": "Bearer %s" % key},
            timeout=TIMEOUT,
        )
        r.raise_for_status()
        report("rerank", True, "top result index %s" % r.json()["results"][0]["index"])
    except (requests.RequestException, KeyError, IndexError, ValueError) as e:
        report("rerank", False, str(e))

sys.exit(1 if failures else 0)
