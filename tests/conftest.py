import pytest

from rendition.composer import compose
from rendition.schemas import (
    CachePolicy,
    RegistryEntry,
    RegistrySource,
    Representation,
    TransformRule,
)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Point RENDITION_HOME at an empty directory and clear RENDITION_* overrides."""
    import os

    for name in list(os.environ):
        if name.startswith("RENDITION_"):
            monkeypatch.delenv(name, raising=False)
    home = tmp_path / "rendition-home"
    monkeypatch.setenv("RENDITION_HOME", str(home))
    return home


@pytest.fixture
def markdown_entry():
    return RegistryEntry(
        kind_id="core:markdown",
        schema_ref="schemas/core/markdown.json",
        allowed_representations=("text/markdown", "text/html", "text/plain"),
        transform_rules=(
            TransformRule(
                input="text/markdown",
                output="text/html",
                operation="markdown.render",
                options={"safe": True},
            ),
        ),
        sanitization_policy_ref="policies/html-strict",
        fallback_policy=("text/plain",),
        cache_policy=CachePolicy(ttl_seconds=86400, invalidate_on=("payload-hash", "tool-version")),
    )


@pytest.fixture
def image_entry():
    return RegistryEntry(
        kind_id="core:image",
        schema_ref="schemas/core/image.json",
        allowed_representations=("image/svg+xml", "image/png", "image/webp"),
        transform_rules=(
            TransformRule(
                input="image/svg+xml",
                output="image/png",
                operation="image.rasterize",
                timeout_seconds=20,
            ),
        ),
        fallback_policy=("image/png",),
        cache_policy=CachePolicy(timeout_seconds=45),
    )


@pytest.fixture
def document_entry():
    return RegistryEntry(
        kind_id="core:document",
        schema_ref="schemas/core/document.json",
        allowed_representations=("application/pdf", "text/plain"),
        fallback_policy=("text/plain",),
    )


@pytest.fixture
def core_source(markdown_entry, image_entry, document_entry):
    return RegistrySource(
        source_id="core",
        entries=(markdown_entry, image_entry, document_entry),
    )


@pytest.fixture
def snapshot(core_source):
    return compose(core_source)


@pytest.fixture
def markdown_rep():
    return Representation.inline("text/markdown", "# Title\n\nBody text.")


@pytest.fixture
def png_rep():
    return Representation.external(
        "image/png;dpi=96",
        "https://cdn.example.com/img/a.png",
        width=800,
        height=600,
        content_hash="sha256:" + "a" * 64,
    )
