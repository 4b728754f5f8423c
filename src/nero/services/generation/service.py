"""Generation task submission and polling.

Submission checks the balance, creates the provider task and records it
locally as pending. Polling asks the provider for the current outcome of a
non-terminal task and hands it to the reconciler; the webhook path skips the
provider call and reconciles the outcome it was delivered.
"""

from dataclasses import dataclass
from uuid import UUID

import structlog

from nero.models.generated_image import GeneratedImage
from nero.models.task import GenerationTask, TaskKind
from nero.services.billing import BillingLedger
from nero.services.exceptions import (
    InvalidGenerationRequest,
    MaterializationError,
    ProviderRequestError,
    ProviderTransientError,
    UserNotFoundError,
)
from nero.services.generation.prompt_validator import validate_image_urls, validate_prompt
from nero.services.generation.provider_client import (
    CallbackEvent,
    GenerationRequest,
    NanoBananaClient,
)
from nero.services.generation.reconciler import TaskReconciler
from nero.services.storage.remote_image import RemoteImageFetcher

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ReferenceUpload:
    """An uploaded reference image for image-to-image generation."""

    data: bytes
    content_type: str | None
    filename: str | None = None


@dataclass(frozen=True)
class SubmittedTask:
    """Result of a successful submission."""

    task: GenerationTask
    image: GeneratedImage


class GenerationService:
    """Entry points for submitting, polling and receiving generation tasks."""

    def __init__(
        self,
        uow_factory,
        provider: NanoBananaClient,
        reconciler: TaskReconciler,
        ledger: BillingLedger,
        callback_url: str,
        fetcher: RemoteImageFetcher,
        public_base_url: str = "",
        references_folder: str = "nero/references",
    ):
        """Initialize service.

        Args:
            uow_factory: Factory producing UnitOfWork instances
            provider: NanoBanana API client
            reconciler: Reconciler applying provider outcomes
            ledger: Billing ledger used for pricing and the balance pre-check
            callback_url: Webhook URL handed to the provider
            fetcher: Local image storage used for uploaded reference images
            public_base_url: Origin the provider uses to fetch stored uploads
            references_folder: Uploads folder for reference images
        """
        self.uow_factory = uow_factory
        self.provider = provider
        self.reconciler = reconciler
        self.ledger = ledger
        self.callback_url = callback_url
        self.fetcher = fetcher
        self.public_base_url = public_base_url.rstrip("/")
        self.references_folder = references_folder

    async def submit(
        self,
        owner_id: UUID,
        prompt: str,
        kind: TaskKind = TaskKind.TEXT_TO_IMAGE,
        image_size: str = "1:1",
        num_images: int = 1,
        input_image_urls: list[str] | None = None,
        template_id: str | None = None,
    ) -> SubmittedTask:
        """Submit a generation request and record it as pending.

        Args:
            owner_id: Submitting user
            prompt: Text prompt
            kind: Text-to-image or image-to-image
            image_size: Aspect ratio passed to the provider
            num_images: Number of images requested
            input_image_urls: Reference images (required for image-to-image)
            template_id: Style template the prompt was built from, if any

        Returns:
            SubmittedTask with the stored task and image record

        Raises:
            InvalidGenerationRequest: Empty/oversized prompt or missing input images
            UserNotFoundError: Unknown owner_id
            InsufficientBalanceError: Balance below the generation cost
            ProviderTransientError: Provider unreachable (nothing is stored)
            ProviderRequestError: Provider rejected the request (nothing is stored)
        """
        prompt = validate_prompt(prompt)
        image_urls: list[str] = []
        if kind == TaskKind.IMAGE_TO_IMAGE:
            image_urls = validate_image_urls(input_image_urls)

        cost = await self._quote(owner_id)
        return await self._create(
            owner_id, prompt, kind, image_size, num_images, image_urls, template_id, cost
        )

    async def submit_with_uploads(
        self,
        owner_id: UUID,
        prompt: str,
        uploads: list[ReferenceUpload],
        image_size: str = "1:1",
        num_images: int = 1,
        template_id: str | None = None,
    ) -> SubmittedTask:
        """Store uploaded reference images and submit an image-to-image task using them.

        Uploads land in references_folder and are handed to the provider as
        absolute URLs under public_base_url. The balance is checked before
        anything is written.

        Raises:
            InvalidGenerationRequest: Bad prompt, no uploads, or a non-image upload
            MaterializationError: An upload could not be written
            UserNotFoundError, InsufficientBalanceError, Provider*Error: As for submit()
        """
        prompt = validate_prompt(prompt)
        if not uploads:
            raise InvalidGenerationRequest("At least one input image is required for editing")
        for upload in uploads:
            media_type = (upload.content_type or "").split(";")[0].strip().lower()
            if not media_type.startswith("image/"):
                raise InvalidGenerationRequest(
                    f"Reference upload {upload.filename or ''!r} is not an image"
                )
            if not upload.data:
                raise InvalidGenerationRequest(
                    f"Reference upload {upload.filename or ''!r} is empty"
                )

        cost = await self._quote(owner_id)

        image_urls = []
        for upload in uploads:
            saved = await self.fetcher.save_bytes(
                upload.data, upload.content_type, self.references_folder
            )
            image_urls.append(f"{self.public_base_url}{saved.url}")

        logger.info(
            "task.references_stored",
            owner_id=str(owner_id),
            count=len(image_urls),
            folder=self.references_folder,
        )
        return await self._create(
            owner_id,
            prompt,
            TaskKind.IMAGE_TO_IMAGE,
            image_size,
            num_images,
            image_urls,
            template_id,
            cost,
        )

    async def _quote(self, owner_id: UUID) -> int:
        async with await self.uow_factory() as uow:
            user = await uow.users.get_by_id(owner_id)
            if user is None:
                raise UserNotFoundError(owner_id)
            cost = self.ledger.quote(user)
            await self.ledger.ensure_can_afford(uow, owner_id, cost)
        return cost

    async def _create(
        self,
        owner_id: UUID,
        prompt: str,
        kind: TaskKind,
        image_size: str,
        num_images: int,
        image_urls: list[str],
        template_id: str | None,
        cost: int,
    ) -> SubmittedTask:
        """Create the provider task, then record it locally as pending."""
        task_id = await self.provider.submit(
            GenerationRequest(
                prompt=prompt,
                kind=kind,
                callback_url=self.callback_url,
                image_size=image_size,
                num_images=num_images,
                image_urls=image_urls,
            )
        )

        async with await self.uow_factory() as uow:
            task = await uow.tasks.add(
                GenerationTask(
                    task_id=task_id,
                    owner_id=owner_id,
                    kind=kind,
                    prompt=prompt,
                    image_size=image_size,
                    num_images=num_images,
                    input_image_urls=image_urls,
                    template_id=template_id,
                    cost=cost,
                )
            )
            image = await uow.images.add(
                GeneratedImage(
                    owner_id=owner_id,
                    task_id=task_id,
                    prompt=prompt,
                    kind=kind,
                    reference_inputs=image_urls,
                    template_id=template_id,
                )
            )

        logger.info(
            "task.submitted",
            task_id=task_id,
            owner_id=str(owner_id),
            kind=kind.value,
            cost=cost,
        )
        return SubmittedTask(task=task, image=image)

    async def poll(self, task_id: str, owner_id: UUID | None = None) -> GenerationTask:
        """Return the task, reconciling it against the provider first if non-terminal.

        Provider errors and storage failures leave the task as stored and are
        only logged; the caller polls again later.

        Raises:
            TaskNotFoundError: Unknown task_id
            TaskAccessDeniedError: owner_id does not own the task
        """
        task = await self.reconciler.load(task_id, owner_id)
        if task.is_terminal:
            return task

        try:
            outcome = await self.provider.get_status(task_id)
        except (ProviderTransientError, ProviderRequestError) as e:
            logger.warning(
                "task.poll.provider_error",
                task_id=task_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return task

        try:
            return await self.reconciler.apply(task_id, outcome, owner_id)
        except MaterializationError as e:
            logger.warning("task.poll.storage_error", task_id=task_id, error=str(e))
            return await self.reconciler.load(task_id)

    async def handle_callback(self, event: CallbackEvent) -> GenerationTask:
        """Reconcile an authenticated webhook delivery.

        Raises:
            TaskNotFoundError: Unknown task_id
            MaterializationError: Result could not be stored; the provider should redeliver
        """
        logger.info(
            "webhook.reconcile",
            task_id=event.task_id,
            code=event.code,
            outcome=type(event.outcome).__name__,
        )
        return await self.reconciler.apply(event.task_id, event.outcome)


def create_generation_service(settings, uow_factory, http_client) -> GenerationService:
    """Wire provider client, fetcher, ledger and reconciler from settings.

    Args:
        settings: Application settings
        uow_factory: Factory producing UnitOfWork instances
        http_client: Shared httpx.AsyncClient (owned by the caller)
    """
    provider = NanoBananaClient(
        api_key=settings.nanobanana_api_key,
        http_client=http_client,
        base_url=settings.nanobanana_base_url,
        timeout=settings.provider_timeout_seconds,
    )
    fetcher = RemoteImageFetcher(
        uploads_root=settings.uploads_dir,
        http_client=http_client,
        timeout=settings.download_timeout_seconds,
    )
    ledger = BillingLedger(generation_cost=settings.generation_cost)
    reconciler = TaskReconciler(
        uow_factory=uow_factory,
        fetcher=fetcher,
        ledger=ledger,
        folder=settings.generated_folder,
        claim_lease_seconds=settings.claim_lease_seconds,
        claim_wait_seconds=settings.claim_wait_seconds,
        claim_poll_interval_seconds=settings.claim_poll_interval_seconds,
        max_materialization_attempts=settings.max_materialization_attempts,
    )
    return GenerationService(
        uow_factory=uow_factory,
        provider=provider,
        reconciler=reconciler,
        ledger=ledger,
        callback_url=settings.callback_url,
        fetcher=fetcher,
        public_base_url=settings.api_base_url,
        references_folder=settings.references_folder,
    )
