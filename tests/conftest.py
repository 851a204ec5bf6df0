import pytest

from atxp.shared.auth import OAuthMetadata
from tests.support import auth_server_metadata


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def authorization_server() -> OAuthMetadata:
    return OAuthMetadata.model_validate(auth_server_metadata())
