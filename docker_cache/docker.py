"""
Script: docker_cache/docker.py
What: Restores and saves Docker images through the Actions cache.
Doing: `load` restores the archive or records existing images; `save` archives only images created since.
Why: Runners start with pre-pulled images, and caching those again would waste space and time.
Goal: Reuse images built earlier in the same workflow on later runs.
"""

from __future__ import annotations

from typing import Callable, Sequence

from docker_cache.actions import ActionsContext
from docker_cache.cache_service import CacheBackend
from docker_cache.common import CiToolError
from docker_cache.shell import execute_shell_command


CACHE_HIT = "cache-hit"
DOCKER_IMAGES_LIST = "docker-images-list"
DOCKER_IMAGES_PATH = "~/.docker-images.tar"

# One identifier per line:
# - named images as `repository:tag` (or `repository` when the tag is `<none>`)
# - unnamed images by their ID, so every image can still be diffed and saved
LIST_COMMAND = (
    "docker image list --format '"
    '{{ if ne .Repository "<none>" }}{{ .Repository }}'
    '{{ if ne .Tag "<none>" }}:{{ .Tag }}{{ end }}{{ else }}{{ .ID }}{{ end }}\''
)

ShellRunner = Callable[[str, ActionsContext], str]


def find_new_images(current_images: Sequence[str], preexisting_images: Sequence[str]) -> list[str]:
    """Return images in `current_images` that are not empty and not preexisting, in order."""
    preexisting = set(preexisting_images)
    return [image for image in current_images if image and image not in preexisting]


def load_docker_images(
    context: ActionsContext,
    cache: CacheBackend,
    *,
    run_shell: ShellRunner = execute_shell_command,
) -> None:
    """Restore cached images, or record the current image list as the baseline."""
    try:
        requested_key = context.get_input("key", required=True)
        restored_key = cache.restore([DOCKER_IMAGES_PATH], requested_key)

        # Only an exact key match counts. A restore-key match means the
        # archive was built for different inputs, so save must still run.
        cache_hit = requested_key == restored_key
        context.save_state(CACHE_HIT, "true" if cache_hit else "false")
        context.set_output(CACHE_HIT, cache_hit)

        if cache_hit:
            context.info(f"Cache hit: Restoring Docker images from {DOCKER_IMAGES_PATH}.")
            run_shell(f"docker load --input {DOCKER_IMAGES_PATH}", context)
        else:
            context.info(
                "Cache miss: Recording existing Docker images, including those pre-cached by GitHub Actions."
            )
            docker_images = run_shell(LIST_COMMAND, context)
            context.save_state(DOCKER_IMAGES_LIST, docker_images)
    except Exception as exc:
        raise CiToolError(f"Failed to load Docker images: {exc}") from exc


def save_docker_images(
    context: ActionsContext,
    cache: CacheBackend,
    *,
    run_shell: ShellRunner = execute_shell_command,
) -> None:
    """Save images created since `load` ran, unless nothing new needs caching."""
    try:
        key = context.get_input("key", required=True)

        if context.get_state(CACHE_HIT) == "true":
            context.info(f"Cache hit on key {key}, skipping cache save.")
            return

        if context.get_input("read-only") == "true":
            context.info(f"Cache miss on key {key}, but skipping cache save due to read-only mode.")
            return

        # Another job sharing this key may have saved it while we ran.
        # This check is advisory: a job can still win the race after it.
        existing_cache_key = cache.restore([DOCKER_IMAGES_PATH], key, [], lookup_only=True)
        if existing_cache_key == key:
            context.info(
                f"Cache miss occurred earlier, but another process has since saved a cache with key {key}. "
                "Skipping save."
            )
            return

        preexisting_images = context.get_state(DOCKER_IMAGES_LIST).split("\n")

        context.info("Fetching current Docker images...")
        current_images = run_shell(LIST_COMMAND, context).split("\n")

        new_images = find_new_images(current_images, preexisting_images)
        if not new_images:
            context.info("No new Docker images detected. Skipping cache save.")
            return

        context.info(f"Saving {len(new_images)} new Docker images (excluding preexisting images).")
        run_shell(f"docker save --output {DOCKER_IMAGES_PATH} {' '.join(new_images)}", context)

        cache.save([DOCKER_IMAGES_PATH], key)
    except Exception as exc:
        raise CiToolError(f"Failed to save Docker images: {exc}") from exc
