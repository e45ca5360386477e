import os
import pytest
from queuectl.storage.config import ConfigRepository
from queuectl.storage.repository import JobRepository
from queuectl.storage.store import Store


@pytest.fixture
def data_file(tmp_path):
    return os.path.join(str(tmp_path), "queue.json")


@pytest.fixture
def store(data_file):
    return Store(data_file)


@pytest.fixture
def repo(store):
    return JobRepository(store)


@pytest.fixture
def config(store):
    return ConfigRepository(store)
