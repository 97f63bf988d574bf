"""Audio pipeline: receive, VAD, per-channel buffering, phrase assembly and WAV encoding."""
from .frames import AudioFrame, ChannelKey, MalformedAudio
from .receiver import AudioReceiver
from .vad import NoiseDetected, SpeechEnded, SpeechStarted, VadPhase, VoiceActivityDetector
from .buffer import ChannelBufferManager, ChannelState, FlushReason, PhraseReady
from .assembler import PhraseAssembler, Utterance
from .wav import encode_wav, read_wav_info

__all__ = [
    "AudioFrame",
    "ChannelKey",
    "MalformedAudio",
    "AudioReceiver",
    "VoiceActivityDetector",
    "VadPhase",
    "SpeechStarted",
    "SpeechEnded",
    "NoiseDetected",
    "ChannelBufferManager",
    "ChannelState",
    "FlushReason",
    "PhraseReady",
    "PhraseAssembler",
    "Utterance",
    "encode_wav",
    "read_wav_info",
]
