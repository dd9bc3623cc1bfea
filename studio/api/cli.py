"""
Terminal adapter for the Replicate image studio.

Architectural role:
- Collects generation parameters from arguments or an interactive form loop.
- Manages the locally stored API key.
- Delegates validation, submission and polling to `GenerationSession`.

Commands:
- `generate`: one-shot generation, prints one image URL per line.
- `key set|clear|show`: credential management.
- `interactive`: form loop; free text is used as the prompt.

Error handling strategy:
- Every `GenerationError` is printed as a single message and yields exit code 1.
- Ctrl-C during a generation stops polling and asks the service to cancel.
- EOF and keyboard interrupts at the prompt end the loop without a traceback.

Side effects:
- Reads/writes the credential store.
- Network I/O through the session; optional image downloads.
"""

from dotenv import load_dotenv

load_dotenv()

import argparse
import asyncio
import logging
import sys
from dataclasses import fields, replace

from studio.image.downloads import download_images
from studio.image.errors import GenerationError
from studio.image.models import (
    IMAGE_SIZES,
    OUTPUT_COUNTS,
    SCHEDULERS,
    GenerationRequest,
    random_seed,
)
from studio.image.provider_config import LOG_LEVEL
from studio.image.service import resolve_credential
from studio.image.session import GenerationSession
from studio.storage.credential_store import CredentialStore, mask


logger = logging.getLogger(__name__)


# =========================================================
# UTF-8 SAFE OUTPUT
# =========================================================

if hasattr(sys.stdout, "reconfigure"):
    try:
        sys.stdout.reconfigure(encoding="utf-8", errors="ignore")
    except (AttributeError, OSError, ValueError):
        pass


# =========================================================
# ARGUMENTS
# =========================================================

def build_parser():
    """Return the top-level argument parser."""
    parser = argparse.ArgumentParser(
        prog="studio-cli",
        description="Generate images with the Replicate predictions API",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="Generate images for one prompt")
    gen.add_argument("--prompt", required=True)
    gen.add_argument("--negative-prompt", default="")
    gen.add_argument("--width", type=int, choices=IMAGE_SIZES, default=768)
    gen.add_argument("--height", type=int, choices=IMAGE_SIZES, default=768)
    gen.add_argument("--num-outputs", type=int, choices=OUTPUT_COUNTS, default=1)
    gen.add_argument("--scheduler", choices=SCHEDULERS, default="K_EULER")
    gen.add_argument("--steps", type=int, default=50, help="Inference steps (10-150)")
    gen.add_argument("--guidance-scale", type=float, default=7.5, help="Guidance scale (1-20)")
    seed_group = gen.add_mutually_exclusive_group()
    seed_group.add_argument("--seed", type=int, default=None)
    seed_group.add_argument("--random-seed", action="store_true")
    gen.add_argument("--api-key", default=None, help="Use this key instead of the stored one")
    gen.add_argument("--download", metavar="DIR", default=None, help="Save images into DIR")

    key = sub.add_parser("key", help="Manage the stored API key")
    key_sub = key.add_subparsers(dest="key_command", required=True)
    key_set = key_sub.add_parser("set", help="Store an API key")
    key_set.add_argument("value")
    key_sub.add_parser("clear", help="Remove the stored API key")
    key_sub.add_parser("show", help="Show the stored API key (masked)")

    sub.add_parser("interactive", help="Interactive generation form")
    return parser


def request_from_args(args):
    seed = random_seed() if args.random_seed else args.seed
    return GenerationRequest(
        prompt=args.prompt,
        negative_prompt=args.negative_prompt,
        width=args.width,
        height=args.height,
        num_outputs=args.num_outputs,
        scheduler=args.scheduler,
        num_inference_steps=args.steps,
        guidance_scale=args.guidance_scale,
        seed=seed,
    )


# =========================================================
# GENERATION
# =========================================================

def run_generation(session, request, credential):
    """
    Run one generation to completion and return its result.

    Ctrl-C stops local polling and, when a prediction was already created,
    requests a remote cancel before re-raising `KeyboardInterrupt`.
    """
    try:
        return asyncio.run(session.generate(request, credential))
    except KeyboardInterrupt:
        try:
            asyncio.run(session.cancel(remote=True))
        except GenerationError as e:
            logger.warning("Remote cancel failed: %s", e.message)
        raise


def print_result(result, download_dir=None):
    for url in result.images:
        print(url or "(empty output)")
    if download_dir:
        for path in download_images(result.images, download_dir):
            print(f"Saved {path}")


def cmd_generate(args, store):
    session = GenerationSession()
    credential = resolve_credential(args.api_key, store)

    try:
        result = run_generation(session, request_from_args(args), credential)
        print_result(result, args.download)
    except GenerationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nGeneration cancelled.", file=sys.stderr)
        return 130
    return 0


def cmd_key(args, store):
    if args.key_command == "set":
        if not store.save(args.value):
            print("Refusing to store an empty API key.", file=sys.stderr)
            return 1
        print("API key saved.")
    elif args.key_command == "clear":
        store.clear()
        print("API key cleared. Your API key has been removed from local storage.")
    else:
        print(mask(store.load()))
    return 0


# =========================================================
# INTERACTIVE FORM
# =========================================================

HELP_TEXT = """Commands:
 <text>                 generate with <text> as the prompt
 /set <field> <value>   change a setting (negative_prompt, width, height,
                        num_outputs, scheduler, num_inference_steps,
                        guidance_scale, seed)
 /show                  show current settings
 /seed                  pick a random seed
 /key <value>           store API key
 /clearkey              remove stored API key
 /help                  this help
 exit                   quit
"""

_FIELD_TYPES = {f.name: f.type for f in fields(GenerationRequest)}


def apply_setting(form, name, raw):
    """Return a copy of `form` with field `name` parsed from `raw`."""
    if name == "prompt" or name not in _FIELD_TYPES:
        raise ValueError(f"Unknown setting: {name}")

    if name in ("width", "height", "num_outputs", "num_inference_steps"):
        value = int(raw)
    elif name == "guidance_scale":
        value = float(raw)
    elif name == "seed":
        value = None if raw.lower() in ("", "none", "random") else int(raw)
    elif name == "scheduler":
        value = raw.upper()
    else:
        value = raw
    return replace(form, **{name: value})


def interactive(store):
    """
    Run the terminal form loop.

    The form keeps the last settings between generations; the prompt is taken
    from each free-text line.
    """
    session = GenerationSession()
    form = GenerationRequest(prompt="")
    credential = store.load()

    print("Replicate image studio. (Type '/help' for commands, 'exit' to quit)")
    print(f"API key: {mask(credential)}")
    print("-" * 60)

    while True:
        try:
            line = input("Prompt: ").strip()
        except EOFError:
            print()
            break
        except KeyboardInterrupt:
            print("\nInterrupted.")
            break

        if not line:
            continue

        if line.lower() in ("exit", "quit"):
            break

        if line == "/help":
            print(HELP_TEXT)
            continue

        if line == "/show":
            for f in fields(form):
                if f.name != "prompt":
                    print(f" {f.name}: {getattr(form, f.name)}")
            continue

        if line == "/seed":
            form = replace(form, seed=random_seed())
            print(f"Seed: {form.seed}")
            continue

        if line.startswith("/key"):
            parts = line.split(maxsplit=1)
            if len(parts) == 2 and store.save(parts[1]):
                credential = store.load()
                print("API key saved.")
            else:
                print("Usage: /key <value>")
            continue

        if line == "/clearkey":
            store.clear()
            credential = None
            print("API key cleared.")
            continue

        if line.startswith("/set"):
            parts = line.split(maxsplit=2)
            if len(parts) < 2:
                print("Usage: /set <field> <value>")
                continue
            try:
                form = apply_setting(form, parts[1], parts[2] if len(parts) == 3 else "")
            except ValueError as e:
                print(f"Invalid setting: {e}")
                continue
            print(f"{parts[1]} = {getattr(form, parts[1])}")
            continue

        print("\nGenerating your image...\n")
        try:
            result = run_generation(session, replace(form, prompt=line), credential)
            print_result(result)
        except GenerationError as e:
            print(f"Error: {e.message}")
        except KeyboardInterrupt:
            print("\nGeneration cancelled.")

        print("\n" + "-" * 60 + "\n")

    return 0


# =========================================================
# MAIN
# =========================================================

def main(argv=None):
    logging.basicConfig(
        level=getattr(logging, LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = build_parser().parse_args(argv)
    store = CredentialStore()

    if args.command == "generate":
        return cmd_generate(args, store)
    if args.command == "key":
        return cmd_key(args, store)
    return interactive(store)


if __name__ == "__main__":
    sys.exit(main())
