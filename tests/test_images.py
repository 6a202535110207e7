import pytest
from sqlalchemy import select

from src.ai.providers.base import ReferenceImage
from src.ai.providers.mock_provider import MockImageProvider, MockTextProvider
from src.content.generator import generate_content
from src.core.errors import Forbidden, InvalidRequest, InvalidTransition, NotFound, RateLimited, UnsafeContent
from src.images.cdn import CDNUploadError
from src.images.options import coerce_style_type, options_for
from src.images.service import (
    ImageRequestParams,
    compose_prompt,
    generate_images_for_content,
    image_parameters,
    list_images,
    transition_image_status,
)
from src.images.settings import (
    add_brand_colors,
    add_style_code,
    find_brand_colors,
    get_image_settings,
    remove_brand_colors,
    remove_style_code,
    update_image_settings,
)
from src.prompts.store import create_template
from src.storage.models import GenerationLog, ImageGenerationRecord
from tests.support import add_member, context_for


class StaticUploader:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.uploads = []

    def upload_from_url(self, source_url: str, filename: str) -> str:
        if self.fail:
            raise CDNUploadError("sirv_upload_failed status=500")
        self.uploads.append((source_url, filename))
        return f"https://eden.sirv.com/eden/generated/{filename}"


@pytest.fixture
def content(session, owner_ctx):
    create_template(session, owner_ctx, name="Blog", category="blog_post", prompt_content="About {{title}}")
    provider = MockTextProvider(responder=lambda request: "# Shelter Stories\n\nFamilies found beds and meals.")
    return generate_content(session, owner_ctx, category="blog_post", variables={"title": "Hope"}, provider=provider).content


def _generate(session, ctx, content_id, *, provider=None, uploader=None, **params):
    return generate_images_for_content(
        session,
        ctx,
        content_id,
        params=ImageRequestParams.from_payload(params),
        provider=provider or MockImageProvider(),
        uploader=uploader or StaticUploader(),
    )


def test_options_differ_by_model_version() -> None:
    v3 = options_for("V3")
    v2 = options_for("v2")

    assert [item["value"] for item in v3["style_types"]] == ["AUTO", "GENERAL", "REALISTIC", "DESIGN"]
    assert v3["supports_reference_images"] is True
    assert v3["max_reference_images"] == 3
    assert v3["cost_per_image_usd"] == {"TURBO": 0.03, "DEFAULT": 0.06, "QUALITY": 0.09}
    assert {"value": "RENDER_3D", "label": "3D Render"} in v2["style_types"]
    assert v2["supports_style_codes"] is False
    assert v2["max_reference_images"] == 0
    assert coerce_style_type("v3", "anime") == "GENERAL"
    assert coerce_style_type("v2", "anime") == "ANIME"
    with pytest.raises(InvalidRequest, match="unsupported_model_version"):
        options_for("v9")


def test_request_params_accept_camel_and_snake_case() -> None:
    params = ImageRequestParams.from_payload(
        {
            "customPrompt": "Candlelit vigil",
            "modelVersion": "v3",
            "style_type": "REALISTIC",
            "numImages": "2",
            "styleCodes": ["aabbccdd"],
            "useAccountColors": True,
            "applyAccountPromptAffixes": False,
        }
    )

    assert params.prompt == "Candlelit vigil"
    assert params.model_version == "v3"
    assert params.style_type == "REALISTIC"
    assert params.num_images == 2
    assert params.style_codes == ("aabbccdd",)
    assert params.use_account_colors is True
    assert params.apply_account_prompt_affixes is False
    assert ImageRequestParams.from_payload(None).apply_account_prompt_affixes is True


def test_image_settings_defaults_and_affixes(session, owner_ctx) -> None:
    initial = get_image_settings(session, owner_ctx)
    assert initial.defaults["model_version"] == "v2"
    assert initial.defaults["aspect_ratio"] == "16:9"
    assert initial.prompt_prefix is None

    updated = update_image_settings(
        session,
        owner_ctx,
        prompt_prefix="  Eden house style:  ",
        prompt_suffix="warm light",
        defaults={"model_version": "v3", "style_type": "ANIME", "num_images": 2},
    )
    assert updated.prompt_prefix == "Eden house style:"
    assert updated.defaults["model_version"] == "v3"
    assert updated.defaults["style_type"] == "GENERAL"
    assert updated.defaults["num_images"] == 2
    assert compose_prompt("A chapel", updated, apply_affixes=True) == "Eden house style: A chapel warm light"
    assert compose_prompt("A chapel", updated, apply_affixes=False) == "A chapel"

    cleared = update_image_settings(session, owner_ctx, clear_affixes=True)
    assert cleared.prompt_prefix is None and cleared.prompt_suffix is None
    assert cleared.defaults["num_images"] == 2

    with pytest.raises(InvalidRequest, match="num_images_out_of_range"):
        update_image_settings(session, owner_ctx, defaults={"num_images": 9})
    with pytest.raises(InvalidRequest, match="unknown_image_default"):
        update_image_settings(session, owner_ctx, defaults={"quality": "high"})


def test_brand_colors_are_validated_and_unique(session, owner_ctx) -> None:
    entries = add_brand_colors(session, owner_ctx, name="Primary", colors=["#aabbcc", "#102030"])
    assert entries == [{"name": "Primary", "colors": ["#AABBCC", "#102030"]}]

    with pytest.raises(InvalidRequest, match="brand_color_name_taken"):
        add_brand_colors(session, owner_ctx, name="primary", colors=["#000000"])
    with pytest.raises(InvalidRequest, match="invalid_hex_color"):
        add_brand_colors(session, owner_ctx, name="Bad", colors=["blue"])

    view = get_image_settings(session, owner_ctx)
    assert find_brand_colors(view, "PRIMARY") == ["#AABBCC", "#102030"]
    with pytest.raises(NotFound):
        find_brand_colors(view, "Secondary")

    assert remove_brand_colors(session, owner_ctx, 0) == []
    with pytest.raises(NotFound):
        remove_brand_colors(session, owner_ctx, 0)


def test_style_codes_and_seeds(session, owner_ctx) -> None:
    entries = add_style_code(session, owner_ctx, {"value": "aabbccdd", "name": "Soft film"})
    entries = add_style_code(session, owner_ctx, {"type": "style_code", "value": "AABBCCDD"})
    assert entries == [{"type": "style_code", "value": "AABBCCDD", "name": "Soft film"}]

    entries = add_style_code(session, owner_ctx, {"type": "seed", "value": "42"})
    assert entries[-1] == {"type": "seed", "value": 42}

    with pytest.raises(InvalidRequest, match="invalid_style_code"):
        add_style_code(session, owner_ctx, {"value": "xyz"})
    with pytest.raises(InvalidRequest, match="style_seed_must_be_non_negative"):
        add_style_code(session, owner_ctx, {"type": "seed", "value": -1})

    assert [entry["type"] for entry in remove_style_code(session, owner_ctx, 0)] == ["seed"]


def test_editor_cannot_change_image_settings(session_factory, session, owner) -> None:
    add_member(session_factory, owner.account_id, user_id="user-editor", role="editor")
    editor_ctx = context_for(session_factory, owner, user_id="user-editor")

    assert get_image_settings(session, editor_ctx).brand_colors == []
    with pytest.raises(Forbidden):
        update_image_settings(session, editor_ctx, prompt_prefix="x")


def test_generation_uses_default_prompt_and_uploads_safe_images(session, owner_ctx, content) -> None:
    provider = MockImageProvider()
    uploader = StaticUploader()

    outcome = _generate(session, owner_ctx, content.id, provider=provider, uploader=uploader, numImages=2)

    assert len(outcome.image_ids) == 2
    assert outcome.unsafe_count == 0
    assert len(outcome.log_ids) == 1
    log_row = session.get(GenerationLog, outcome.log_ids[0])
    assert log_row.template_id is None
    assert log_row.version_id is None
    assert log_row.content_id == content.id
    assert log_row.success is True
    request = provider.calls[0]
    assert request.prompt.startswith('Editorial illustration for "Shelter Stories".')
    assert request.model_version == "v2"
    assert request.aspect_ratio == "16:9"
    assert len(uploader.uploads) == 2
    record = outcome.records[0]
    assert record.status == "pending_review"
    assert record.result_url.startswith("https://eden.sirv.com/eden/generated/")
    assert record.provider_url.startswith("https://picsum.photos/")
    assert image_parameters(record)["num_images"] == 2


def test_failed_attempts_without_template_are_logged(session, owner_ctx, content) -> None:
    class FlakyImageProvider(MockImageProvider):
        def __init__(self) -> None:
            super().__init__()
            self.failures = 1

        def generate_image(self, request):
            if self.failures:
                self.failures -= 1
                raise RateLimited("ideogram_rate_limited")
            return super().generate_image(request)

    outcome = _generate(session, owner_ctx, content.id, provider=FlakyImageProvider(), uploader=StaticUploader())

    rows = [session.get(GenerationLog, log_id) for log_id in outcome.log_ids]
    assert [row.success for row in rows] == [False, True]
    assert rows[0].error == "rate_limited: ideogram_rate_limited"
    assert all(row.version_id is None for row in rows)


def test_generation_applies_affixes_palette_and_image_template(session, owner_ctx, content) -> None:
    update_image_settings(session, owner_ctx, prompt_prefix="Eden style:", prompt_suffix="no text")
    add_brand_colors(session, owner_ctx, name="Primary", colors=["#AABBCC"])
    create_template(
        session,
        owner_ctx,
        name="Images",
        category="image_generation",
        prompt_content="Photo for {{title}}",
    )
    provider = MockImageProvider()

    outcome = _generate(session, owner_ctx, content.id, provider=provider, useAccountColors=True)

    request = provider.calls[0]
    assert request.prompt == "Eden style: Photo for Shelter Stories no text"
    assert request.color_palette == ("#AABBCC",)
    assert outcome.prepared.palette_name == "Primary"
    assert len(outcome.log_ids) == 1
    log_row = session.get(GenerationLog, outcome.log_ids[0])
    assert log_row.content_id == content.id
    assert log_row.model_used == "mock-v2"


def test_unsupported_style_is_coerced(session, owner_ctx, content) -> None:
    provider = MockImageProvider()

    outcome = _generate(session, owner_ctx, content.id, provider=provider, modelVersion="v3", styleType="RENDER_3D")

    assert provider.calls[0].style_type == "GENERAL"
    assert outcome.prepared.style_coerced is True
    assert image_parameters(outcome.records[0])["requested_style_type"] == "RENDER_3D"


def test_unsafe_images_are_archived(session, owner_ctx, content) -> None:
    outcome = _generate(
        session,
        owner_ctx,
        content.id,
        provider=MockImageProvider(unsafe_indexes=(1,)),
        numImages=2,
    )

    assert outcome.unsafe_count == 1
    assert len(outcome.image_ids) == 1
    statuses = sorted(record.status for record in outcome.records)
    assert statuses == ["archived", "pending_review"]


def test_all_unsafe_raises_but_keeps_audit_records(session, owner_ctx, content) -> None:
    with pytest.raises(UnsafeContent, match="all_generated_images_unsafe"):
        _generate(session, owner_ctx, content.id, provider=MockImageProvider(unsafe_indexes=(0,)))

    records = session.scalars(select(ImageGenerationRecord)).all()
    assert [(record.status, record.is_safe) for record in records] == [("archived", False)]


def test_upload_failures_keep_provider_url(session, owner_ctx, content) -> None:
    outcome = _generate(session, owner_ctx, content.id, uploader=StaticUploader(fail=True))

    assert outcome.upload_failures == 1
    assert outcome.records[0].result_url.startswith("https://picsum.photos/")


def test_generation_can_be_disabled(session, owner_ctx, content, monkeypatch) -> None:
    from src.core.config import get_settings

    monkeypatch.setenv("IMAGE_GENERATION_ENABLED", "false")
    get_settings.cache_clear()

    with pytest.raises(InvalidRequest, match="image_generation_disabled"):
        _generate(session, owner_ctx, content.id)


def test_reference_images_only_for_v3(session, owner_ctx, content) -> None:
    first = _generate(session, owner_ctx, content.id)
    reference_id = first.image_ids[0]
    provider = MockImageProvider()
    loaded = []

    def loader(record):
        loaded.append(record.id)
        return ReferenceImage(filename=f"{record.id}.png", content=b"png-bytes")

    outcome = generate_images_for_content(
        session,
        owner_ctx,
        content.id,
        params=ImageRequestParams.from_payload({"modelVersion": "v3", "referenceImageIds": [reference_id]}),
        provider=provider,
        uploader=StaticUploader(),
        reference_loader=loader,
    )

    assert loaded == [reference_id]
    assert len(provider.calls[0].reference_images) == 1
    assert image_parameters(outcome.records[0])["reference_image_ids"] == [reference_id]

    with pytest.raises(InvalidRequest, match="too_many_reference_images"):
        generate_images_for_content(
            session,
            owner_ctx,
            content.id,
            params=ImageRequestParams.from_payload({"modelVersion": "v3", "referenceImageIds": ["a", "b", "c", "d"]}),
            provider=provider,
            uploader=StaticUploader(),
            reference_loader=loader,
        )


def test_review_transitions(session, owner_ctx, content) -> None:
    outcome = _generate(
        session,
        owner_ctx,
        content.id,
        provider=MockImageProvider(unsafe_indexes=(1,)),
        numImages=2,
    )
    safe = next(record for record in outcome.records if record.is_safe)
    unsafe = next(record for record in outcome.records if not record.is_safe)

    assert transition_image_status(session, owner_ctx, safe.id, target="approved").status == "approved"
    with pytest.raises(InvalidTransition):
        transition_image_status(session, owner_ctx, safe.id, target="archived")
    with pytest.raises(InvalidRequest, match="unsafe_image_cannot_be_reviewed"):
        transition_image_status(session, owner_ctx, unsafe.id, target="pending_review")

    assert [record.id for record in list_images(session, owner_ctx, status="approved")] == [safe.id]
    assert [record.id for record in list_images(session, owner_ctx, content_id=content.id, status="archived")] == [
        unsafe.id
    ]
