"""Reconciliation tests.

Covers the task lifecycle as driven by provider outcomes:
- Happy path: pending -> processing -> completed with a stored result and one debit
- Failures: both task and image record fail, balance untouched
- Idempotency: duplicate and concurrent deliveries converge on one result
- Ownership enforcement
- Storage failures: retry on the next delivery, give up after the attempt limit
"""

import asyncio
import re
from pathlib import Path
from uuid import uuid4

import pytest

from nero.models.generated_image import ImageStatus
from nero.models.task import TaskStatus
from nero.services.exceptions import (
    MaterializationError,
    TaskAccessDeniedError,
    TaskNotFoundError,
)
from nero.services.generation.outcomes import (
    FailedTerminal,
    FailedTransient,
    StillRunning,
    Succeeded,
)
from nero.services.generation.provider_client import parse_callback
from nero.services.generation.state_machine import Effect, Transition

REFERENCE_PATTERN = re.compile(r"^/uploads/nero/generated/\d{13}-[a-z0-9]{8}\.png$")


async def load_state(uow_factory, task_id: str, user_id):
    async with await uow_factory() as uow:
        task = await uow.tasks.get_by_task_id(task_id)
        image = await uow.images.get_by_task_id(task_id)
        stars = await uow.users.get_stars(user_id)
    return task, image, stars


def stored_files(settings) -> list[Path]:
    root = Path(settings.uploads_dir) / settings.generated_folder
    if not root.exists():
        return []
    return sorted(root.iterdir())


@pytest.mark.asyncio
class TestHappyPath:
    async def test_pending_to_processing_to_completed(
        self, reconciler, upstream, uow_factory, settings, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")

        task = await reconciler.apply("task-1", StillRunning(), owner_id=user.id)
        assert task.status == TaskStatus.PROCESSING

        task = await reconciler.apply("task-1", Succeeded(result_url=result_url), owner_id=user.id)

        assert task.status == TaskStatus.COMPLETED
        assert len(task.result_references) == 1
        reference = task.result_references[0]
        assert REFERENCE_PATTERN.match(reference)
        assert task.completed_at is not None
        assert task.claim_id is None

        task, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert image.status == ImageStatus.COMPLETED
        assert image.image_reference == reference
        assert image.completed_at == task.completed_at
        assert stars == 2

        files = stored_files(settings)
        assert len(files) == 1
        assert reference.endswith(files[0].name)
        assert upstream.downloads == [result_url]

    async def test_unlimited_subscription_is_not_charged(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=0, subscription="pro")
        await make_task(user, "task-1", cost=0)
        result_url = upstream.add_image("/results/fox.png")

        task = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert task.status == TaskStatus.COMPLETED
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 0

    async def test_debit_bottoms_out_at_zero(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        """Balance spent elsewhere after submission never goes negative."""
        user = await make_user(stars=0)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")

        task = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert task.status == TaskStatus.COMPLETED
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 0

    async def test_style_usage_recorded_for_templates(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", template_id="noir")
        result_url = upstream.add_image("/results/fox.png")

        await reconciler.apply("task-1", Succeeded(result_url=result_url))

        async with await uow_factory() as uow:
            assert await uow.style_usages.count_by_template("noir") == 1


@pytest.mark.asyncio
class TestFailures:
    async def test_content_policy_violation_fails_task_and_image(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", cost=1)
        event = parse_callback({"code": 400, "msg": "nsfw", "data": {"taskId": "task-1"}})

        task = await reconciler.apply(event.task_id, event.outcome)

        assert task.status == TaskStatus.FAILED
        assert "Content policy violation: nsfw" in task.error_detail

        task, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert image.status == ImageStatus.FAILED
        assert "Content policy violation: nsfw" in image.error_detail
        assert stars == 3
        assert upstream.downloads == []

    async def test_provider_internal_error_fails_task(
        self, reconciler, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", status=TaskStatus.PROCESSING)

        task = await reconciler.apply("task-1", FailedTransient("Internal error: gpu lost"))

        assert task.status == TaskStatus.FAILED
        assert task.error_detail == "Internal error: gpu lost"

    async def test_unknown_task(self, reconciler):
        with pytest.raises(TaskNotFoundError):
            await reconciler.apply("missing", StillRunning())


@pytest.mark.asyncio
class TestIdempotency:
    async def test_duplicate_success_delivery_is_acknowledged_without_effects(
        self, reconciler, upstream, uow_factory, settings, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")

        first = await reconciler.apply("task-1", Succeeded(result_url=result_url))
        second = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert second.status == TaskStatus.COMPLETED
        assert second.result_references == first.result_references
        assert len(upstream.downloads) == 1
        assert len(stored_files(settings)) == 1
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 2

    @pytest.mark.parametrize(
        "late_outcome",
        [StillRunning(), FailedTerminal("Generation failed: late"), FailedTransient("x")],
    )
    async def test_completed_task_ignores_later_outcomes(
        self, reconciler, upstream, make_user, make_task, late_outcome
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1")
        result_url = upstream.add_image("/results/fox.png")
        completed = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        task = await reconciler.apply("task-1", late_outcome)

        assert task.status == TaskStatus.COMPLETED
        assert task.result_references == completed.result_references
        assert task.error_detail is None

    async def test_failed_task_ignores_later_success(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1")
        result_url = upstream.add_image("/results/fox.png")
        await reconciler.apply("task-1", FailedTerminal("Generation failed: bad seed"))

        task = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert task.status == TaskStatus.FAILED
        assert task.result_references == []
        assert upstream.downloads == []
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 3

    async def test_processing_does_not_regress(self, reconciler, make_user, make_task):
        user = await make_user()
        await make_task(user, "task-1", status=TaskStatus.PROCESSING)

        task = await reconciler.apply("task-1", StillRunning())

        assert task.status == TaskStatus.PROCESSING

    async def test_concurrent_success_deliveries_bill_once(
        self, reconciler, upstream, uow_factory, settings, make_user, make_task
    ):
        user = await make_user(stars=5)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")
        upstream.download_delay = 0.1

        results = await asyncio.gather(
            *(reconciler.apply("task-1", Succeeded(result_url=result_url)) for _ in range(5))
        )

        references = {tuple(task.result_references) for task in results}
        assert len(references) == 1
        assert all(task.status == TaskStatus.COMPLETED for task in results)
        assert len(upstream.downloads) == 1
        assert len(stored_files(settings)) == 1
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 4

    async def test_webhook_and_poll_race_converge(
        self, service, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=5)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")
        upstream.set_status("task-1", 1, result_url=result_url)
        upstream.download_delay = 0.1
        event = parse_callback(
            {
                "code": 200,
                "msg": "ok",
                "data": {"taskId": "task-1", "info": {"resultImageUrl": result_url}},
            }
        )

        from_webhook, from_poll = await asyncio.gather(
            service.handle_callback(event), service.poll("task-1", owner_id=user.id)
        )

        assert from_webhook.status == TaskStatus.COMPLETED
        assert from_poll.status == TaskStatus.COMPLETED
        assert from_webhook.result_references == from_poll.result_references
        assert len(upstream.downloads) == 1
        _, _, stars = await load_state(uow_factory, "task-1", user.id)
        assert stars == 4


@pytest.mark.asyncio
class TestOwnership:
    async def test_other_user_cannot_reconcile(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        owner = await make_user(stars=3)
        intruder = await make_user(stars=3)
        await make_task(owner, "task-1")
        result_url = upstream.add_image("/results/fox.png")

        with pytest.raises(TaskAccessDeniedError):
            await reconciler.apply("task-1", Succeeded(result_url=result_url), owner_id=intruder.id)

        task, image, stars = await load_state(uow_factory, "task-1", owner.id)
        assert task.status == TaskStatus.PENDING
        assert image.status == ImageStatus.PENDING
        assert stars == 3
        assert upstream.downloads == []

    async def test_load_enforces_ownership(self, reconciler, make_user, make_task):
        owner = await make_user()
        await make_task(owner, "task-1")

        assert (await reconciler.load("task-1", owner.id)).task_id == "task-1"
        with pytest.raises(TaskAccessDeniedError):
            await reconciler.load("task-1", uuid4())


@pytest.mark.asyncio
class TestStorageFailures:
    async def test_storage_failure_keeps_task_open_for_retry(
        self, reconciler, upstream, uow_factory, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", status=TaskStatus.PROCESSING, cost=1)
        result_url = upstream.add_image("/results/fox.png")
        upstream.download_status = 500

        with pytest.raises(MaterializationError):
            await reconciler.apply("task-1", Succeeded(result_url=result_url))

        task, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert task.status == TaskStatus.PROCESSING
        assert task.claim_id is None
        assert task.materialization_attempts == 1
        assert task.last_storage_error.startswith("Post-success storage error")
        # A task that can still complete carries no failure cause
        assert task.error_detail is None
        assert image.status == ImageStatus.PENDING
        assert image.error_detail is None
        assert stars == 3

        # Redelivery after the storage problem is gone completes the task
        upstream.download_status = 200
        task = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert task.status == TaskStatus.COMPLETED
        assert task.error_detail is None
        _, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert image.status == ImageStatus.COMPLETED
        assert stars == 2

    async def test_storage_failures_give_up_after_max_attempts(
        self, reconciler, upstream, uow_factory, settings, make_user, make_task
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", cost=1)
        result_url = upstream.add_image("/results/fox.png")
        upstream.download_status = 503

        for _ in range(settings.max_materialization_attempts - 1):
            with pytest.raises(MaterializationError):
                await reconciler.apply("task-1", Succeeded(result_url=result_url))

        task = await reconciler.apply("task-1", Succeeded(result_url=result_url))

        assert task.status == TaskStatus.FAILED
        assert task.error_detail.startswith("Post-success storage error")
        task, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert image.status == ImageStatus.FAILED
        assert stars == 3

        # Terminal now: further deliveries do not download again
        downloads = len(upstream.downloads)
        await reconciler.apply("task-1", Succeeded(result_url=result_url))
        assert len(upstream.downloads) == downloads


@pytest.mark.asyncio
class TestTransitionGuards:
    async def test_completion_without_success_outcome_is_rejected(
        self, reconciler, uow_factory, make_user, make_task, monkeypatch
    ):
        user = await make_user(stars=3)
        await make_task(user, "task-1", cost=1)
        monkeypatch.setattr(
            "nero.services.generation.reconciler.decide",
            lambda status, outcome, cost: Transition(
                TaskStatus.COMPLETED, (Effect.MATERIALIZE, Effect.DEBIT)
            ),
        )

        with pytest.raises(TypeError, match="Succeeded outcome"):
            await reconciler.apply("task-1", FailedTerminal("boom"))

        task, image, stars = await load_state(uow_factory, "task-1", user.id)
        assert task.status == TaskStatus.PENDING
        assert image.status == ImageStatus.PENDING
        assert stars == 3
