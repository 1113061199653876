"""
FRAMEFORGE CLI - adapt images into a storyboard project file.

Commands:
- adapt IMAGE --project P.json [--instruction ...]   새 이미지를 스토리에 적응
- regenerate FRAME_ID --project P.json               기존 프레임 재생성
- integrate FRAME_ID IMAGE --project P.json          에셋을 프레임에 통합
- story IMAGE... --project P.json [--frames N]       에셋으로 새 프레임 생성
- prompts --project P.json                           모든 프레임 프롬프트 생성
- dossiers --project P.json                          도시에 목록
"""

import argparse
import json
import os
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from schemas import ImageKind, ProgressEvent, Sketch, StoryProject, StorySettings
from agents import GeminiCapability, PromptAgent, StoryStore
from config import get_model_settings, load_settings
from pipeline import AdaptationPipeline
from utils.errors import FrameforgeError
from utils.image_source import compute_source_hash, sniff_mime_type
from utils.logger import set_level


def load_project(path: str) -> StoryProject:
    """Read a project file; a missing file starts an empty project."""
    if not os.path.exists(path):
        print(f"[INFO] {path} not found, starting a new project")
        return StoryProject(name=Path(path).stem)
    with open(path, "r", encoding="utf-8") as f:
        return StoryProject.model_validate(json.load(f))


def save_project(store: StoryStore, path: str, name: str, project_id: str) -> None:
    project = store.to_project(name, project_id=project_id)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(project.model_dump_json(indent=2))
    print(f"[OK] Saved {len(project.frames)} frames, {len(project.dossiers)} dossiers -> {path}")


def print_progress(event: ProgressEvent) -> None:
    print(f"  [{event.stage.value}] {event.message}")


def sketch_from_file(image_path: str) -> Sketch:
    """Uploaded asset: bytes inline, content hash as the dossier key."""
    with open(image_path, "rb") as f:
        data = f.read()
    return Sketch(
        image_url=None,
        data=data,
        mime_type=sniff_mime_type(data),
        source_hash=compute_source_hash(data),
        kind=ImageKind.ASSET,
    )


def cmd_adapt(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    target = sketch_from_file(args.image)

    known = store.registry.lookup(target.source_hash)
    if known is not None:
        print(f"[INFO] Known subject: '{known.role_label}' ({known.type.value})")

    pipeline = AdaptationPipeline(registry=store.registry, settings=settings)
    result, _ = pipeline.adapt_in_store(
        store, target, args.instruction, insert_at=args.insert_at, on_progress=print_progress
    )

    print(f"\nRole: {result.brief.role_label} ({result.brief.subject_type.value})")
    print(f"Prompt: {result.display_prompt}")
    if result.new_dossier is not None:
        print(f"[OK] New dossier registered: '{result.new_dossier.role_label}'")

    save_project(store, args.project, project.name, project.id)
    return 0


def cmd_regenerate(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    frame = store.get(args.frame_id)
    if frame is None:
        print(f"[ERROR] Frame {args.frame_id} not found in {args.project}")
        return 1

    pipeline = AdaptationPipeline(registry=store.registry, settings=settings)
    result, _ = pipeline.adapt_in_store(store, frame, args.instruction, on_progress=print_progress)

    print(f"\nPrompt: {result.display_prompt}")
    save_project(store, args.project, project.name, project.id)
    return 0


def make_prompt_agent(settings) -> PromptAgent:
    models = get_model_settings(settings)
    return PromptAgent(
        GeminiCapability(),
        prompt_model=models.prompt_model,
        analysis_model=models.analysis_model,
        editing_model=models.editing_model,
        generation_model=models.generation_model,
        language=settings["story"]["language"],
    )


def cmd_integrate(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    frame = store.get(args.frame_id)
    if frame is None:
        print(f"[ERROR] Frame {args.frame_id} not found in {args.project}")
        return 1

    asset = sketch_from_file(args.image)
    known = store.registry.lookup(asset.source_hash)
    if known is not None:
        print(f"[INFO] Known subject: '{known.role_label}' ({known.type.value})")

    result = make_prompt_agent(settings).integrate_asset(
        asset, frame, args.instruction, mode=args.mode, existing_dossier=known, source_hash=asset.source_hash
    )
    store.append_version(frame.id, result.image.to_data_url(), prompt=result.prompt)
    if known is not None:
        store.registry.touch(known.source_hash)
    elif result.new_dossier is not None:
        store.registry.upsert(result.new_dossier)
        print(f"[OK] New dossier registered: '{result.new_dossier.role_label}'")

    print(f"Prompt: {result.prompt}")
    save_project(store, args.project, project.name, project.id)
    return 0


def cmd_story(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    assets = [sketch_from_file(path) for path in args.images]
    story = StorySettings(genre=args.genre, ending=args.ending, prompt=args.idea)

    created = 0
    try:
        for update in make_prompt_agent(settings).create_story_from_assets(assets, story, args.frames):
            if update.type == "progress":
                print(f"  {update.message}")
            else:
                store.insert_frame(update.frame)
                created += 1
                print(f"  [OK] Frame {update.index + 1}: {update.frame.prompt}")
    finally:
        # frames finished before a failure are kept
        if created:
            save_project(store, args.project, project.name, project.id)

    print(f"\n[OK] {created}/{args.frames} frames created")
    return 0


def cmd_prompts(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    frames = [f for f in store.snapshot() if f.has_image]
    if not frames:
        print("[INFO] No frames with images")
        return 0

    prompts = make_prompt_agent(settings).analyze_story(frames)
    for frame, prompt in zip(frames, prompts):
        store.update_prompt(frame.id, prompt)
        print(f"  {frame.id[:8]}: {prompt}")

    save_project(store, args.project, project.name, project.id)
    return 0


def cmd_dossiers(args, settings) -> int:
    project = load_project(args.project)
    store = StoryStore.from_project(project)
    dossiers = store.registry.all()
    if not dossiers:
        print("No dossiers.")
        return 0
    for dossier in dossiers:
        frames = store.frames_for_dossier(dossier.source_hash)
        print(f"  {dossier.source_hash[:12]}  {dossier.type.value:<9} {dossier.role_label}  ({len(frames)} frames)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="frameforge",
        description="Adapt images into a storyboard so they match its style and recurring subjects.",
    )
    parser.add_argument("--config", default=None, help="settings.yaml path (default: bundled)")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    adapt = sub.add_parser("adapt", help="adapt a new image into the project")
    adapt.add_argument("image", help="image file to adapt")
    adapt.add_argument("--project", required=True, help="project JSON file (created if missing)")
    adapt.add_argument("--instruction", default="", help="free-text instruction for the Director")
    adapt.add_argument("--insert-at", type=int, default=None, help="position of the new frame (default: end)")
    adapt.set_defaults(func=cmd_adapt)

    regen = sub.add_parser("regenerate", help="re-adapt an existing frame")
    regen.add_argument("frame_id")
    regen.add_argument("--project", required=True)
    regen.add_argument("--instruction", default="")
    regen.set_defaults(func=cmd_regenerate)

    integrate = sub.add_parser("integrate", help="place an asset image into an existing frame")
    integrate.add_argument("frame_id")
    integrate.add_argument("image", help="asset image file")
    integrate.add_argument("--project", required=True)
    integrate.add_argument("--instruction", default="", help="what to do with the asset")
    integrate.add_argument("--mode", default="", help="integration mode, e.g. add / replace")
    integrate.set_defaults(func=cmd_integrate)

    story = sub.add_parser("story", help="build new frames from asset images")
    story.add_argument("images", nargs="+", help="asset image files")
    story.add_argument("--project", required=True)
    story.add_argument("--frames", type=int, default=4, help="number of frames to create")
    story.add_argument("--genre", default="")
    story.add_argument("--ending", default="")
    story.add_argument("--idea", default="", help="free-text story idea")
    story.set_defaults(func=cmd_story)

    prompts = sub.add_parser("prompts", help="write a video prompt for every frame")
    prompts.add_argument("--project", required=True)
    prompts.set_defaults(func=cmd_prompts)

    dossiers = sub.add_parser("dossiers", help="list recurring subjects")
    dossiers.add_argument("--project", required=True)
    dossiers.set_defaults(func=cmd_dossiers)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    load_dotenv()
    args = build_parser().parse_args(argv)
    if args.verbose:
        set_level("DEBUG")

    try:
        settings = load_settings(args.config)
        return args.func(args, settings)
    except FrameforgeError as e:
        print(f"\n[ERROR] {e.user_message()}")
        return 2
    except KeyboardInterrupt:
        print("\n[INTERRUPTED]")
        return 1


if __name__ == "__main__":
    sys.exit(main())
