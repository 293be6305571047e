from __future__ import annotations

import dataclasses
import logging
import os
import sys

from simple_parsing import ArgumentGenerationMode, ArgumentParser, DashVariant
from simple_parsing.wrappers.field_wrapper import NestedMode

from asr_relay import asr_config, audio_io, transcribe
from asr_relay.errors import AsrError

API_KEY_ENV_VAR = "DASHSCOPE_API_KEY"


def _configure_logging(config: asr_config.CLIConfig) -> None:
    level = logging.DEBUG if config.asr.dashscope.debug else getattr(logging, config.log_level)
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main(*, config: asr_config.CLIConfig) -> int:
    """
    Transcribe ``config.audio_file`` and print the transcript to stdout.

    Args:
        config: Complete CLI configuration from argument parsing

    Returns:
        Process exit status (0 on success, 1 on any transcription error)
    """
    _configure_logging(config)

    try:
        audio = audio_io.load_pcm16(config.audio_file, sample_rate=config.asr.streaming.sample_rate)
        text = transcribe.transcribe(config.asr.dashscope.api_key or "", audio, config=config.asr)
    except AsrError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(text)
    return 0


def parse_config(argv: list[str] | None = None) -> asr_config.CLIConfig:
    parser = ArgumentParser(
        prog="asr-relay",
        description="Transcribe a recording with the DashScope realtime recognition service",
        add_option_string_dash_variants=DashVariant.AUTO,  # Preserve underscores, no dash variants
        argument_generation_mode=ArgumentGenerationMode.NESTED,  # Always use full dotted paths
        nested_mode=NestedMode.WITHOUT_ROOT,  # Remove "config." prefix from flags
    )
    parser.add_arguments(asr_config.CLIConfig, dest="config")
    args = parser.parse_args(argv)
    config: asr_config.CLIConfig = args.config

    # Fall back to the environment for the API key
    if config.asr.dashscope.api_key is None:
        env_api_key = os.getenv(API_KEY_ENV_VAR)
        if env_api_key:
            config = dataclasses.replace(
                config,
                asr=dataclasses.replace(
                    config.asr,
                    dashscope=dataclasses.replace(config.asr.dashscope, api_key=env_api_key),
                ),
            )
    return config


def run() -> None:
    """Main entry point for the CLI."""
    sys.exit(main(config=parse_config()))


if __name__ == "__main__":
    run()
