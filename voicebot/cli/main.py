"""CLI entry point for the voice bot."""

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import structlog

from ..config.settings import Settings, settings
from ..core.cancellation import CancellationToken
from ..core.errors import BackendConfigurationError, ChatError
from ..core.turn_coordinator import CoordinatorConfig, TurnCoordinator
from ..metrics.collector import MetricsCollector
from ..providers import registry
from ..providers.chat.base import ChatClient
from ..providers.microphone import MicrophoneAccess, NullMicrophone
from ..providers.stt.base import CaptureEngine
from ..providers.tts.base import SynthesisEngine
from ..services.speech_capture import SpeechCaptureService
from ..services.speech_output import SpeechOutputService
from ..state.conversation_log import Role, Turn
from ..state.store import CallState, CallStatus
from ..utils.logging import setup_logging


logger = structlog.get_logger()


STATUS_LABELS = {
    CallStatus.CONNECTING: "🔌 Connecting...",
    CallStatus.READY: "✅ Ready",
    CallStatus.LISTENING: "🎙️  Listening...",
    CallStatus.PROCESSING: "🤔 Thinking...",
    CallStatus.SPEAKING: "🔊 Speaking...",
}


def validate_provider(ctx, param, value):
    """Validate provider selection."""
    if value is None:
        return value

    if param.name == "capture_engine":
        valid_providers = registry.list_capture_engines()
        provider_type = "capture engine"
    elif param.name == "speech_engine":
        valid_providers = registry.list_synthesis_engines()
        provider_type = "speech engine"
    elif param.name == "chat_provider":
        valid_providers = registry.list_chat_clients()
        provider_type = "chat provider"
    else:
        return value

    if value not in valid_providers:
        raise click.BadParameter(
            f"Invalid {provider_type} '{value}'. "
            f"Available options: {', '.join(valid_providers)}"
        )
    return value


def configure_logging(config: Settings, debug: bool, log_file: Optional[bool] = None) -> None:
    setup_logging(config.logging, debug=debug, log_file=log_file)


def create_capture_engine(config: Settings, mock: bool = False) -> CaptureEngine:
    """Mock mode reads typed lines instead of audio."""
    if mock:
        return registry.get_capture_engine("keyboard")
    return registry.get_capture_engine(config.capture.engine)


def create_synthesis_engine(config: Settings, mock: bool = False) -> SynthesisEngine:
    if mock:
        from ..mocks.providers import MockSynthesisEngine

        return MockSynthesisEngine(auto_complete=True, speak_duration=0.5)
    return registry.get_synthesis_engine(config.speech.engine)


def create_chat_client(config: Settings, mock: bool = False) -> ChatClient:
    if mock:
        from ..mocks.providers import MockChatClient

        return MockChatClient(delay=0.5)
    return registry.get_chat_client(config.chat.provider)


def create_microphone(config: Settings, mock: bool = False) -> MicrophoneAccess:
    if mock or config.capture.engine == "keyboard":
        return NullMicrophone()
    from ..providers.stt.microphone import SoundDeviceMicrophone

    return SoundDeviceMicrophone(
        sample_rate=config.capture.sample_rate, channels=config.capture.channels
    )


def create_speech_output(config: Settings, engine: SynthesisEngine) -> SpeechOutputService:
    return SpeechOutputService(
        engine,
        preferred_locale=config.speech.preferred_locale,
        voice_name_hint=config.speech.voice_name_hint,
        init_timeout=config.speech.init_timeout,
        ready_settle=config.speech.ready_settle,
        settle_delay=config.speech.settle_delay,
        speak_ready_timeout=config.speech.speak_ready_timeout,
        readiness_wait=config.speech.readiness_wait,
        poll_interval=config.speech.poll_interval,
    )


def create_coordinator(
    config: Settings, mock: bool = False, metrics: Optional[MetricsCollector] = None
) -> TurnCoordinator:
    """Build a coordinator with providers selected by ``config``."""
    return TurnCoordinator(
        capture=SpeechCaptureService(create_capture_engine(config, mock)),
        output=create_speech_output(config, create_synthesis_engine(config, mock)),
        chat=create_chat_client(config, mock),
        microphone=create_microphone(config, mock),
        config=CoordinatorConfig.from_settings(config),
        metrics=metrics,
    )


class CallPrinter:
    """Echoes turns, status changes and errors to the terminal."""

    def __init__(self, bot_name: str, show_interim: bool = False):
        self.bot_name = bot_name
        self.show_interim = show_interim

    def on_turn(self, turn: Turn) -> None:
        if turn.role == Role.USER:
            click.echo(click.style(f"You: {turn.content}", fg="cyan"))
        else:
            click.echo(click.style(f"{self.bot_name}: {turn.content}", fg="green"))

    def on_state(self, new: CallState, old: CallState) -> None:
        if new.error and new.error != old.error:
            click.echo(click.style(f"❌ {new.error}", fg="red"))
        if old.text_only and not new.text_only:
            click.echo(click.style("🔊 Voice available, replies will be spoken", fg="green"))
        if new.status != old.status and new.status in STATUS_LABELS:
            click.echo(click.style(STATUS_LABELS[new.status], dim=True))
        if (
            self.show_interim
            and new.interim_transcript
            and new.interim_transcript != old.interim_transcript
        ):
            click.echo(click.style(f"  ... {new.interim_transcript}", dim=True))


async def run_call(coordinator: TurnCoordinator, printer: CallPrinter) -> bool:
    """
    Connect, start a call and keep it running until a signal or the call ends.

    Returns False if the call could not be started.
    """
    loop = asyncio.get_running_loop()
    done = asyncio.Event()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, done.set)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(done.set))

    def watch(new: CallState, old: CallState) -> None:
        printer.on_state(new, old)
        if old.call_active and not new.call_active:
            done.set()

    coordinator.conversation.set_listener(printer.on_turn)
    unsubscribe = coordinator.subscribe(watch)

    try:
        ready = await coordinator.connect()
        if not ready:
            click.echo(click.style("⚠️  No voice available - replies will be text only", fg="yellow"))

        if not await coordinator.start_call():
            return False

        await done.wait()
        return True
    finally:
        unsubscribe()
        await coordinator.aclose()


@click.command()
@click.option(
    "--config", type=click.Path(exists=True), help="Path to configuration file"
)
@click.option(
    "--chat-provider",
    callback=validate_provider,
    default=None,
    help="Chat backend to use (http or gemini)",
)
@click.option("--endpoint", default=None, help="Chat endpoint URL for the http backend")
@click.option(
    "--capture-engine",
    callback=validate_provider,
    default=None,
    help="Speech capture engine to use",
)
@click.option(
    "--speech-engine",
    callback=validate_provider,
    default=None,
    help="Speech synthesis engine to use",
)
@click.option("--no-barge-in", is_flag=True, help="Pause listening while the bot speaks")
@click.option("--debug", is_flag=True, help="Enable debug logging")
@click.option("--mock", is_flag=True, help="Run in mock mode (typed input, no API calls)")
def start(
    config: Optional[str],
    chat_provider: Optional[str],
    endpoint: Optional[str],
    capture_engine: Optional[str],
    speech_engine: Optional[str],
    no_barge_in: bool,
    debug: bool,
    mock: bool,
):
    """
    Start a voice call with the assistant.

    Speak after the introduction; talking while the bot answers interrupts it.
    """
    if config:
        settings.config_file = Path(config)
        settings.reload()

    # Override with command line options
    if chat_provider:
        settings.chat.provider = chat_provider
    if endpoint:
        settings.chat.endpoint_url = endpoint
    if capture_engine:
        settings.capture.engine = capture_engine
    if speech_engine:
        settings.speech.engine = speech_engine
    if no_barge_in:
        settings.capture.barge_in = False

    configure_logging(settings, debug)

    for issue in settings.validate():
        click.echo(click.style(f"⚠️  {issue}", fg="yellow"))

    metrics = MetricsCollector() if settings.metrics.enabled else None

    click.echo(click.style(f"🩺 {settings.persona.name} starting...", fg="green", bold=True))
    if mock:
        click.echo(click.style("⚠️  Running in MOCK mode - type your messages", fg="yellow"))
    else:
        click.echo(f"Capture: {settings.capture.engine}")
        click.echo(f"Speech: {settings.speech.engine}")
        click.echo(f"Chat: {settings.chat.provider}")
    click.echo("\nPress Ctrl+C to end the call.\n")

    try:
        coordinator = create_coordinator(settings, mock=mock, metrics=metrics)
    except Exception as e:
        logger.error("Failed to create providers", error=str(e))
        click.echo(click.style(f"❌ Error: {e}", fg="red"))
        sys.exit(1)

    printer = CallPrinter(settings.persona.name, show_interim=debug)
    started = False
    try:
        started = asyncio.run(run_call(coordinator, printer))
    except KeyboardInterrupt:
        started = True
    except Exception as e:
        logger.error("Fatal error", error=str(e), exc_info=True)
        click.echo(click.style(f"\n❌ Error: {e}", fg="red"))

    if metrics and metrics.current_call:
        summary = metrics.get_summary()
        click.echo("\n📊 Call Summary:")
        click.echo(f"Duration: {summary['call_duration_seconds']:.1f}s")
        click.echo(f"Interactions: {summary['total_interactions']}")
        click.echo(f"Interruptions: {summary['interruptions']}")
        if summary["chat_latency_ms"]["samples"] > 0:
            click.echo(f"Avg Chat Latency: {summary['chat_latency_ms']['avg']:.0f}ms")

    click.echo("\n👋 Goodbye!")
    if not started:
        sys.exit(1)


@click.command()
@click.argument("text")
@click.option(
    "--chat-provider",
    callback=validate_provider,
    default=None,
    help="Chat backend to use (http or gemini)",
)
@click.option("--endpoint", default=None, help="Chat endpoint URL for the http backend")
@click.option("--mock", is_flag=True, help="Use a canned reply instead of the backend")
@click.option("--json-output", "json_output", is_flag=True, help="Print the reply as JSON")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def ask(
    text: str,
    chat_provider: Optional[str],
    endpoint: Optional[str],
    mock: bool,
    json_output: bool,
    debug: bool,
):
    """Send one message to the chat backend and print the reply."""
    configure_logging(settings, debug, log_file=False)

    if chat_provider:
        settings.chat.provider = chat_provider
    if endpoint:
        settings.chat.endpoint_url = endpoint

    client = create_chat_client(settings, mock=mock)

    async def _ask() -> str:
        try:
            return await client.send(text, (), CancellationToken())
        finally:
            await client.aclose()

    try:
        reply = asyncio.run(_ask())
    except BackendConfigurationError as e:
        click.echo(click.style(f"❌ {settings.persona.config_apology_display}", fg="red"), err=True)
        click.echo(f"   {e}", err=True)
        sys.exit(1)
    except ChatError as e:
        click.echo(click.style(f"❌ {settings.persona.apology_display}: {e}", fg="red"), err=True)
        if e.details:
            click.echo(f"   {e.details}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps({"message": text, "response": reply}, ensure_ascii=False))
    else:
        click.echo(reply)


@click.command()
@click.option(
    "--speech-engine",
    callback=validate_provider,
    default=None,
    help="Speech synthesis engine to query",
)
@click.option("--mock", is_flag=True, help="List the mock engine's voices")
@click.option("--debug", is_flag=True, help="Enable debug logging")
def voices(speech_engine: Optional[str], mock: bool, debug: bool):
    """List available voices and mark the one that would be used."""
    configure_logging(settings, debug, log_file=False)

    if speech_engine:
        settings.speech.engine = speech_engine

    try:
        engine = create_synthesis_engine(settings, mock=mock)
    except Exception as e:
        click.echo(click.style(f"❌ Error: {e}", fg="red"), err=True)
        sys.exit(1)
    output = create_speech_output(settings, engine)

    async def _load():
        try:
            await output.initialize()
            return output.voices, output.selected_voice
        finally:
            engine.stop()

    try:
        available, selected = asyncio.run(_load())
    except Exception as e:
        click.echo(click.style(f"❌ Failed to load voices: {e}", fg="red"), err=True)
        sys.exit(1)

    if not available:
        click.echo("No voices available.")
        return

    click.echo(f"🗣️  Voices ({len(available)})")
    for voice in available:
        marker = "*" if voice == selected else " "
        click.echo(f" {marker} {voice.name} [{voice.lang or 'unknown'}] ({voice.id})")
    click.echo(f"\nPreferred locale: {settings.speech.preferred_locale}")


@click.command()
def providers():
    """List available providers."""
    click.echo("🔌 Available Providers")
    click.echo("-" * 50)

    capture_engines = registry.list_capture_engines()
    click.echo(f"\n🎙️  Capture Engines ({len(capture_engines)})")
    for provider in capture_engines:
        click.echo(f"  - {provider}")

    synthesis_engines = registry.list_synthesis_engines()
    click.echo(f"\n🔊 Speech Engines ({len(synthesis_engines)})")
    for provider in synthesis_engines:
        click.echo(f"  - {provider}")

    chat_clients = registry.list_chat_clients()
    click.echo(f"\n🤖 Chat Providers ({len(chat_clients)})")
    for provider in chat_clients:
        click.echo(f"  - {provider}")

    click.echo("\nExample: voicebot start --chat-provider gemini")


# Create CLI group
cli = click.Group(help="Voice-driven medical assistant.")
cli.add_command(start)
cli.add_command(ask)
cli.add_command(voices)
cli.add_command(providers)


if __name__ == "__main__":
    cli()
