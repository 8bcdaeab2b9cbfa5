"""Shared fixtures for the memorch test suite."""

import hashlib
import math
import re
import uuid
from datetime import timedelta

import pytest

from memorch.models.core import CollectionKey, MemoryRecord, MemoryScope, MemoryType, OrgContext, OrgPolicies, UserContext
from memorch.models.errors import EmbeddingFailure
from memorch.services.checkpoint_store import CheckpointStore
from memorch.services.trigger_matcher import TriggerPatternStore
from memorch.utils.config import CheckpointConfig
from memorch.utils.memory_vector_store import InMemoryVectorStore
from memorch.utils.search_cache import SearchCache
from memorch.utils.timestamp_utils import utc_now
from memorch.utils.vector_collections import VectorCollectionAdapter

DIMENSION = 256


def basis(index, dimension=DIMENSION):
    vector = [0.0] * dimension
    vector[index] = 1.0
    return vector


def vector_with_cosine(cosine, dimension=DIMENSION):
    """A unit vector whose cosine similarity to basis(0) is exactly `cosine`."""
    vector = [0.0] * dimension
    vector[0] = cosine
    vector[1] = math.sqrt(max(0.0, 1.0 - cosine * cosine))
    return vector


class FakeEmbedder:
    """Deterministic bag-of-words embedder with per-text overrides and scripted failures."""

    def __init__(self, overrides=None, dimension=DIMENSION):
        self.dimension = dimension
        self.overrides = dict(overrides or {})
        self.failures = {}
        self.calls = []

    def fail(self, text, times=1):
        self.failures[text] = times

    def embed(self, text):
        self.calls.append(text)
        remaining = self.failures.get(text, 0)
        if remaining:
            self.failures[text] = remaining - 1
            raise EmbeddingFailure(f'scripted failure for {text!r}')
        if text in self.overrides:
            return list(self.overrides[text])

        vector = [0.0] * self.dimension
        for token in re.findall(r'[a-z0-9]+', text.lower()):
            vector[int(hashlib.md5(token.encode('utf-8')).hexdigest(), 16) % self.dimension] += 1.0
        return vector


class FakeExtractor:
    """Scripted stand-in for the LLM extractor; returns the same items on every call."""

    def __init__(self, items=None):
        self.items = list(items or [])
        self.calls = []

    def extract(self, window, org, user):
        self.calls.append(list(window))
        return list(self.items)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def vectors():
    return VectorCollectionAdapter(InMemoryVectorStore(), cache=SearchCache(ttl_seconds=60))


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / 'memorch.db')


@pytest.fixture
def checkpoint_store(db_path):
    store = CheckpointStore(CheckpointConfig(db_path=db_path, max_save_attempts=3))
    yield store
    store.close()


@pytest.fixture
def pattern_store(db_path):
    store = TriggerPatternStore(db_path)
    yield store
    store.close()


@pytest.fixture
def acme():
    return OrgContext(org_id='acme', policies=OrgPolicies())


@pytest.fixture
def registered_u1():
    return UserContext(user_id='u1', is_registered=True)


@pytest.fixture
def anonymous():
    return UserContext(user_id=None, is_registered=False)


@pytest.fixture
def seed(vectors, embedder):
    """Store a record directly, bypassing classification."""

    def _seed(org_id, memory_type, text, scope=MemoryScope.ORGANIZATION, user_id=None, confidence=0.9, age_days=0, embedding=None):
        stamp = utc_now() - timedelta(days=age_days)
        record = MemoryRecord(id=str(uuid.uuid4()),
                              org_id=org_id,
                              user_id=user_id,
                              type=memory_type,
                              scope=scope,
                              text=text,
                              embedding=embedding or embedder.embed(text),
                              confidence=confidence,
                              created_at=stamp,
                              updated_at=stamp,
                              source_thread_id='seed')
        vectors.upsert(CollectionKey(org_id, memory_type), record)
        return record

    return _seed
