"""
Video Pipeline - One quiz-video generation run for a class.

Coordinates the components of a run:
1. Resolve the class and read its recent topic history
2. Select one least-used topic per subject (topic_selection)
3. Generate a quiz question per topic via LLM (question_generator)
4. Create the video + question records
5. Hand them to the renderer
6. Record topic usage, only once the video was actually produced

A subject that fails at any step gets its video marked 'failed' and no usage
record, so a failed generation never counts against its topic. The run then
moves on to the next subject.

Can be run standalone via CLI or called from an external job scheduler.
"""

import logging
import os
import sys
import traceback
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from quizshorts.curriculum_db import get_default_store, resolve_class_id
from quizshorts.question_generator import generate_video_content
from quizshorts.topic_selection import (
    SUBJECTS_PER_RUN,
    get_topics_history,
    is_fully_covered,
    record_topic_usage,
    select_topics_for_generation,
)

DATA_DIR = Path(os.getenv("DATA_DIR", "./data"))
LOG_DIR = DATA_DIR / "logs"

logger = logging.getLogger(__name__)


def setup_logging():
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(LOG_DIR / "video_pipeline.log"),
            logging.StreamHandler(),
        ],
    )


def produce_topic_video(class_row: dict, selection: dict, topics_history: list[str],
                        store, content_generator=generate_video_content, renderer=None) -> dict:
    """
    Generate, store and render the quiz video for one selected topic.

    Args:
        class_row: The class dict (id, name).
        selection: One entry from select_topics_for_generation.
        topics_history: Recent "Subject:Topic" strings for the prompt.
        store: Curriculum store.
        content_generator: Callable(class_name, selection, topics_history) -> content dict.
        renderer: Optional callable(video, question) -> output filename. Without
            one, the stored question is the produced artifact.

    Returns:
        A result dict with subject_name, topic_name, status, video_id and error.
    """
    result = {
        "subject_name": selection["subject_name"],
        "topic_name": selection["topic_name"],
        "status": "generating",
        "video_id": None,
        "error": None,
    }

    try:
        content = content_generator(class_row["name"], selection, topics_history)

        video_id = store.create_video(
            class_row["id"],
            selection["subject_id"],
            selection["topic_id"],
            title=content["title"],
            description=content.get("description"),
        )
        result["video_id"] = video_id

        question = dict(content["question"])
        question["id"] = store.create_question(selection["topic_id"], question, video_id=video_id)

        filename = None
        if renderer is not None:
            filename = renderer(store.get_video(video_id), question)

        store.update_video_status(video_id, "generated", filename=filename)
    except Exception as e:
        logger.error(f"  {selection['subject_name']}:{selection['topic_name']} failed: {e}")
        logger.debug(traceback.format_exc())
        result["status"] = "failed"
        result["error"] = str(e)
        if result["video_id"] is not None:
            try:
                store.update_video_status(result["video_id"], "failed")
            except Exception as status_error:
                logger.warning(f"  Could not mark video {result['video_id']} failed: {status_error}")
        return result

    record_topic_usage(
        class_row["id"],
        selection["subject_id"],
        selection["topic_id"],
        video_id=result["video_id"],
        store=store,
    )
    result["status"] = "generated"
    logger.info(f"  {selection['subject_name']}:{selection['topic_name']} -> video {result['video_id']}")
    return result


def run_generation(class_id: int, subjects_per_run: int = None, store=None,
                   content_generator=generate_video_content, renderer=None) -> dict:
    """
    Run one generation pass for a class.

    Selection and history errors abort the run before anything is created.
    Per-subject failures are collected in the results.

    Returns:
        A dict with class_id, class_name, results (one per selected subject),
        succeeded/failed counts and fully_covered.
    """
    store = store or get_default_store()
    if subjects_per_run is None:
        subjects_per_run = SUBJECTS_PER_RUN

    class_row = store.get_class(class_id)
    if class_row is None:
        raise ValueError(f"Class not found: {class_id}")

    logger.info("=" * 60)
    logger.info(f"QUIZ VIDEO RUN: {class_row['name']}")
    logger.info("=" * 60)

    logger.info("STEP 1: Reading topic history...")
    topics_history = get_topics_history(class_id, store=store)
    logger.info(f"  {len(topics_history)} recent usages")

    logger.info("STEP 2: Selecting topics...")
    selected = select_topics_for_generation(class_id, subjects_per_run, store=store)

    logger.info("STEP 3: Generating videos...")
    results = [
        produce_topic_video(
            class_row,
            selection,
            topics_history,
            store,
            content_generator=content_generator,
            renderer=renderer,
        )
        for selection in selected
    ]

    succeeded = sum(1 for r in results if r["status"] == "generated")
    fully_covered = is_fully_covered(class_id, store=store)

    logger.info(f"Run complete: {succeeded} succeeded, {len(results) - succeeded} failed")
    if fully_covered:
        logger.info(f"Every topic in {class_row['name']} has now been used at least once")

    return {
        "class_id": class_id,
        "class_name": class_row["name"],
        "results": results,
        "succeeded": succeeded,
        "failed": len(results) - succeeded,
        "fully_covered": fully_covered,
    }


if __name__ == "__main__":
    if len(sys.argv) < 3 or sys.argv[1] != "run":
        print("Usage:")
        print("  python -m quizshorts.video_pipeline run <class> [--subjects N]")
        sys.exit(1)

    setup_logging()
    store = get_default_store()

    try:
        class_id = resolve_class_id(sys.argv[2], store)
    except ValueError as e:
        print(e)
        sys.exit(1)

    subjects_per_run = None
    if "--subjects" in sys.argv:
        idx = sys.argv.index("--subjects")
        if idx + 1 < len(sys.argv):
            subjects_per_run = int(sys.argv[idx + 1])

    summary = run_generation(class_id, subjects_per_run, store=store)
    print(f"\n{summary['class_name']}: {summary['succeeded']} generated, {summary['failed']} failed")
    for r in summary["results"]:
        line = f"  [{r['status']:9s}] {r['subject_name']}: {r['topic_name']}"
        if r["error"]:
            line += f" ({r['error']})"
        print(line)
    if summary["fully_covered"]:
        print("All topics in this class have been covered at least once.")
