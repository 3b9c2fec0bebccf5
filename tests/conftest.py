import pytest

from app.services.alerts import AlertService
from app.services.proof_processor import ProofProcessor, VideoProofStrategy
from app.services.proof_store import ProofStore

from tests.helpers import InMemoryAlertRepository


@pytest.fixture
def store(tmp_path):
    proof_store = ProofStore(base_path=tmp_path / "uploads", url_prefix="/uploads")
    proof_store.ensure_folders()
    return proof_store


@pytest.fixture
def processor(store):
    # Never depend on a local ffmpeg install
    video = VideoProofStrategy(store, ffmpeg_binary="ffmpeg-not-installed", timeout_seconds=5)
    return ProofProcessor(store, video_strategy=video)


@pytest.fixture
def repository():
    return InMemoryAlertRepository()


@pytest.fixture
def service(repository, store, processor):
    return AlertService(repository, store, processor)
