"""
Tests for the Hugging Face catalog.

HfApi is mocked so no network calls are made.
"""

from types import SimpleNamespace
from unittest.mock import MagicMock, Mock

import pytest
from huggingface_hub.errors import HfHubHTTPError

from llm_runtime.catalog import HuggingFaceCatalog

REPO = "TheBloke/TinyLlama-1.1B-Chat-GGUF"


def make_info(repo_id=REPO, filenames=("tinyllama-1.1b-chat.Q4_K_M.gguf", "README.md"), context_length=2048):
    return SimpleNamespace(
        id=repo_id,
        siblings=[SimpleNamespace(rfilename=name, size=668788096) for name in filenames],
        gguf={"context_length": context_length} if context_length else None,
        downloads=12345,
        gated=False,
    )


@pytest.fixture
def api():
    api = MagicMock()
    api.list_models.return_value = [SimpleNamespace(id=REPO)]
    api.model_info.return_value = make_info()
    return api


@pytest.fixture
def catalog(api, temp_cache_dir):
    return HuggingFaceCatalog(token_file=temp_cache_dir / "hf-token", limit=5, api=api)


class TestListAvailableModels:
    @pytest.mark.asyncio
    async def test_gguf_files_only(self, catalog, api):
        models = await catalog.list_available_models()

        assert len(models) == 1
        model = models[0]
        assert model.repo_id == REPO
        assert model.filename == "tinyllama-1.1b-chat.Q4_K_M.gguf"
        assert model.url.endswith(f"{REPO}/resolve/main/tinyllama-1.1b-chat.Q4_K_M.gguf")
        assert model.size == 668788096
        assert model.context_length == 2048
        assert model.quantization == "Q4_K_M"
        assert model.parameter_count == "1.1B"
        assert model.downloads == 12345
        assert model.huggingface_url == f"https://huggingface.co/{REPO}"

        kwargs = api.list_models.call_args.kwargs
        assert kwargs["filter"] == "gguf"
        assert kwargs["sort"] == "downloads"
        assert kwargs["limit"] == 5

    @pytest.mark.asyncio
    async def test_results_cached(self, catalog, api):
        await catalog.list_available_models()
        await catalog.list_available_models()

        assert api.list_models.call_count == 1

        catalog.clear_cache()
        await catalog.list_available_models()
        assert api.list_models.call_count == 2

    @pytest.mark.asyncio
    async def test_failing_repo_is_skipped(self, catalog, api):
        api.list_models.return_value = [SimpleNamespace(id="gated/repo"), SimpleNamespace(id=REPO)]
        unauthorized = HfHubHTTPError("HTTP 401 Unauthorized", response=Mock(status_code=401, headers={}))
        api.model_info.side_effect = [unauthorized, make_info()]

        models = await catalog.list_available_models()

        assert [m.repo_id for m in models] == [REPO]

    @pytest.mark.asyncio
    async def test_filename_context_hint_without_gguf_metadata(self, catalog, api):
        api.model_info.return_value = make_info(filenames=("yarn-mistral-7b-128k.Q4_K_M.gguf",), context_length=None)

        models = await catalog.list_available_models()

        assert models[0].context_length == 128 * 1024
        assert models[0].max_context_length is None


class TestSearchModels:
    @pytest.mark.asyncio
    async def test_search_passes_query(self, catalog, api):
        await catalog.search_models("  tinyllama ")

        assert api.list_models.call_args.kwargs["search"] == "tinyllama"

    @pytest.mark.asyncio
    async def test_blank_query_lists_all(self, catalog, api):
        await catalog.search_models("   ")

        assert api.list_models.call_args.kwargs["search"] is None


class TestCredentials:
    def test_no_credential(self, catalog):
        assert not catalog.has_credential()
        assert catalog.get_credential() is None

    def test_set_and_remove(self, catalog):
        catalog.set_credential(" hf_secret \n")

        assert catalog.get_credential() == "hf_secret"
        assert catalog.token_file.read_text() == "hf_secret"
        assert (catalog.token_file.stat().st_mode & 0o777) == 0o600

        catalog.remove_credential()

        assert not catalog.has_credential()
        assert not catalog.token_file.exists()

    def test_token_read_from_file(self, temp_cache_dir, api):
        (temp_cache_dir / "hf-token").write_text("hf_from_file\n")

        catalog = HuggingFaceCatalog(token_file=temp_cache_dir / "hf-token", api=api)

        assert catalog.get_credential() == "hf_from_file"

    @pytest.mark.asyncio
    async def test_token_passed_to_hub(self, catalog, api):
        catalog.set_credential("hf_secret")

        await catalog.list_available_models()

        assert api.list_models.call_args.kwargs["token"] == "hf_secret"
        assert api.model_info.call_args.kwargs["token"] == "hf_secret"
