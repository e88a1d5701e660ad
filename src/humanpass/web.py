"""Gradio web interface over the submit and status operations."""
from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

from humanpass.config import TIER_NAMES


def _ensure_gradio() -> Any:
    """Import gradio with a clear error if not installed."""
    try:
        import gradio as gr
        return gr
    except ImportError:
        raise RuntimeError(
            "Gradio is not installed. Install web extras: pip install 'humanpass[web]'"
        ) from None


async def run_humanize(
    text: str, owner: str, tier: str, profile: str
) -> AsyncIterator[tuple[str, str]]:
    """Submit ``text`` and drive the job to a terminal status.

    Yields the accept payload as soon as the job exists, then the final
    report once it is terminal.

    Yields:
        Tuples of (text report, JSON payload). Credit and validation errors
        are reported in the text field with an empty payload.
    """
    from humanpass.config import load_config
    from humanpass.ledger import InsufficientCreditsError
    from humanpass.output import OutputFormatter
    from humanpass.pipeline import PipelineError, open_pipeline
    from humanpass.service import status_payload, submit_payload

    config = load_config(profile=profile)

    async with open_pipeline(config) as orchestrator:
        try:
            job = await orchestrator.submit(owner, text, tier)
        except InsufficientCreditsError as exc:
            yield f"{exc}. Purchase credits or upgrade your plan.", ""
            return
        except (ValueError, PipelineError) as exc:
            yield f"Error: {exc}", ""
            return

        yield (
            f"Job {job.id} accepted; processing...",
            json.dumps(submit_payload(job), indent=2),
        )
        try:
            job = await orchestrator.run(job.id)
        except PipelineError as exc:
            yield f"Error: {exc}", ""
            return

    yield OutputFormatter().format_text(job), json.dumps(status_payload(job), indent=2)


def run_status(job_id: str, profile: str) -> tuple[str, str]:
    """Look up a job by id.

    Returns:
        Tuple of (text report, JSON status payload).
    """
    from humanpass.config import load_config
    from humanpass.output import OutputFormatter
    from humanpass.service import status_payload
    from humanpass.store import JobNotFoundError, open_repository

    config = load_config(profile=profile)
    try:
        job = open_repository(config).get(job_id.strip())
    except JobNotFoundError:
        return f"No job {job_id}", ""
    return OutputFormatter().format_text(job), json.dumps(status_payload(job), indent=2)


def create_app() -> Any:
    """Create and configure the Gradio web application.

    Returns:
        A gr.Blocks application instance.
    """
    gr = _ensure_gradio()

    with gr.Blocks(title="HumanPass - Humanize & Validate") as app:
        gr.Markdown("# HumanPass\n**Humanization with multi-detector validation**")

        with gr.Tab("Humanize"):
            with gr.Row():
                with gr.Column():
                    input_text = gr.Textbox(label="Text", lines=15)
                    owner = gr.Textbox(label="Account", value="demo")
                    tier = gr.Dropdown(choices=list(TIER_NAMES), value="free", label="Tier")
                    humanize_profile = gr.Dropdown(
                        choices=["local", "production"], value="local", label="Profile"
                    )
                    humanize_btn = gr.Button("Humanize", variant="primary")
                with gr.Column():
                    humanize_report = gr.Textbox(label="Job Report", lines=20, interactive=False)
                    humanize_json = gr.Textbox(label="Status Payload", lines=10, interactive=False)

            humanize_btn.click(
                fn=run_humanize,
                inputs=[input_text, owner, tier, humanize_profile],
                outputs=[humanize_report, humanize_json],
            )

        with gr.Tab("Status"):
            with gr.Row():
                with gr.Column():
                    job_id = gr.Textbox(label="Job ID")
                    status_profile = gr.Dropdown(
                        choices=["local", "production"], value="local", label="Profile"
                    )
                    status_btn = gr.Button("Check Status", variant="primary")
                with gr.Column():
                    status_report = gr.Textbox(label="Job Report", lines=20, interactive=False)
                    status_json = gr.Textbox(label="Status Payload", lines=10, interactive=False)

            status_btn.click(
                fn=run_status,
                inputs=[job_id, status_profile],
                outputs=[status_report, status_json],
            )

    return app


def main() -> None:
    """Launch the Gradio web interface."""
    app = create_app()
    app.launch()


if __name__ == "__main__":
    main()
