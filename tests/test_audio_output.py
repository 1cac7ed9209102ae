import asyncio

from conftest import FakeSink, FakeSynthesizer, settle
from tutorloop.audio_output import AudioOutputManager
from tutorloop.errors import ServiceError


async def test_completed_speech_reports_once():
    sink = FakeSink()
    ends = []
    audio = AudioOutputManager(FakeSynthesizer())

    audio.speak("Hello there", sink, on_end=ends.append)
    await settle()
    assert sink.played == [b"mp3-bytes"]
    assert audio.is_speaking

    sink.finish()
    await settle()

    assert ends == ["completed"]
    assert not audio.is_speaking


async def test_new_speech_stops_the_current_one():
    first_sink, second_sink = FakeSink(), FakeSink()
    ends = []
    audio = AudioOutputManager(FakeSynthesizer())

    audio.speak("one", first_sink, on_end=lambda r: ends.append(("one", r)))
    await settle()
    audio.speak("two", second_sink, on_end=lambda r: ends.append(("two", r)))
    await settle()

    assert ends == [("one", "stopped")]
    assert first_sink.stops == 1
    assert second_sink.playing

    audio.stop_all()
    await settle()
    assert ends == [("one", "stopped"), ("two", "stopped")]


async def test_stop_only_affects_its_own_utterance():
    sink = FakeSink()
    ends = []
    audio = AudioOutputManager(FakeSynthesizer())

    old = audio.speak("one", sink, on_end=ends.append)
    audio.speak("two", sink, on_end=ends.append)
    audio.stop(old)
    audio.stop(None)
    await settle()

    assert ends == ["stopped"]
    assert audio.is_speaking


async def test_missing_sink_is_unavailable():
    ends = []
    audio = AudioOutputManager(FakeSynthesizer())

    audio.speak("Hello", None, on_end=ends.append)
    await settle()

    assert ends == ["unavailable"]


async def test_synthesis_failure_reports_error():
    class BrokenSynthesizer(FakeSynthesizer):
        async def synthesize(self, text):
            raise ServiceError("TTS error: 500")

    ends = []
    audio = AudioOutputManager(BrokenSynthesizer())

    audio.speak("Hello", FakeSink(), on_end=ends.append)
    await settle()

    assert ends == ["error"]


async def test_stalled_playback_times_out():
    sink = FakeSink()
    ends = []
    audio = AudioOutputManager(FakeSynthesizer(), safety_timeout=0.05)

    audio.speak("Hello", sink, on_end=ends.append)
    await asyncio.sleep(0.15)
    await settle()

    assert ends == ["timeout"]
    assert sink.stops == 1


async def test_callback_failure_does_not_break_manager():
    def broken(reason):
        raise RuntimeError("listener bug")

    sink = FakeSink()
    audio = AudioOutputManager(FakeSynthesizer())

    audio.speak("Hello", sink, on_end=broken)
    await settle()
    sink.finish()
    await settle()

    assert not audio.is_speaking
