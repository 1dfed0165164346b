"""Tests for the compatibility decision maker."""
from __future__ import annotations

import itertools
import unittest
from typing import Optional

from transcode_engine.domain.capabilities import CapabilityMatrix
from transcode_engine.domain.decision import Priority, TranscodeDecision, TranscodeStrategy
from transcode_engine.domain.probe import MediaProbeResult
from transcode_engine.services.decision import (
    CONTAINER_ALSO_CHANGES_REASON,
    METADATA_UNAVAILABLE_REASON,
    STRATEGY_TABLE,
    TranscodeDecisionMaker,
    audio_bitrate_for,
    build_options,
    classify,
    estimate_seconds,
    format_duration,
    resolution_tier,
    sort_by_priority,
    summarize,
)

BROWSER_MATRIX = CapabilityMatrix(
    video_codecs=frozenset({"h264_baseline", "h264_main", "h264_high", "vp9", "av1"}),
    audio_codecs=frozenset({"aac", "pcm"}),
    containers=frozenset({"mp4", "webm", "mkv", "ogg"}),
)


def _info(**overrides: object) -> MediaProbeResult:
    fields: dict[str, object] = {
        "duration": 600.0,
        "videoCodec": "h264",
        "audioCodec": "aac",
        "resolution": "1920x1080",
        "bitrate": "8000000",
    }
    fields.update(overrides)
    return MediaProbeResult(**fields)  # type: ignore[arg-type]


def _prober(result: Optional[MediaProbeResult]):
    async def probe(_path: str) -> Optional[MediaProbeResult]:
        return result

    return probe


class TestStrategyTable(unittest.TestCase):
    """The table is exhaustive over {video, audio, container} needs."""

    def test_every_combination_has_one_strategy(self) -> None:
        combos = list(itertools.product((False, True), repeat=3))
        self.assertEqual(set(STRATEGY_TABLE), set(combos))
        expected: dict[tuple[bool, bool], TranscodeStrategy] = {
            (False, False): TranscodeStrategy.NOT_NEEDED,
            (False, True): TranscodeStrategy.AUDIO_ONLY,
            (True, False): TranscodeStrategy.VIDEO_ONLY,
            (True, True): TranscodeStrategy.FULL_TRANSCODE,
        }
        for video, audio, container in combos:
            strategy, _ = classify(video, audio, container)
            if not video and not audio:
                want = TranscodeStrategy.CONTAINER_ONLY if container else TranscodeStrategy.NOT_NEEDED
            else:
                want = expected[(video, audio)]
            self.assertEqual(strategy, want, (video, audio, container))

    def test_priorities(self) -> None:
        self.assertEqual(classify(False, False, True)[1], Priority.LOW)
        self.assertEqual(classify(False, True, False)[1], Priority.MEDIUM)
        self.assertEqual(classify(True, False, False)[1], Priority.MEDIUM)
        self.assertEqual(classify(True, True, True)[1], Priority.HIGH)


class TestOptionSynthesis(unittest.TestCase):
    """Tests for option and estimate helpers."""

    def test_resolution_tiers(self) -> None:
        self.assertEqual(resolution_tier("3840x2160"), "uhd")
        self.assertEqual(resolution_tier("2560x1440"), "qhd")
        self.assertEqual(resolution_tier("1920x1080"), "fhd")
        self.assertEqual(resolution_tier("1280x720"), "hd")
        self.assertEqual(resolution_tier("640x360"), "sd")
        self.assertEqual(resolution_tier("garbage"), "sd")

    def test_portrait_video_uses_long_side(self) -> None:
        self.assertEqual(resolution_tier("1080x1920"), "fhd")
        self.assertEqual(resolution_tier("2160x3840"), "uhd")
        self.assertEqual(resolution_tier("720x1280"), "hd")
        portrait = build_options(TranscodeStrategy.VIDEO_ONLY, _info(resolution="1080x1920"))
        self.assertEqual(portrait.crf, 23)
        self.assertEqual(estimate_seconds(600, TranscodeStrategy.VIDEO_ONLY, "1080x1920"), 16)

    def test_audio_bitrate_bands(self) -> None:
        self.assertEqual(audio_bitrate_for(_info(bitrate="12000000")), "192k")
        self.assertEqual(audio_bitrate_for(_info(bitrate="8000000")), "128k")
        self.assertEqual(audio_bitrate_for(_info(bitrate="3000000")), "96k")

    def test_full_transcode_is_union_of_partial_options(self) -> None:
        info = _info(resolution="3840x2160", duration=8000)
        video = build_options(TranscodeStrategy.VIDEO_ONLY, info)
        audio = build_options(TranscodeStrategy.AUDIO_ONLY, info)
        full = build_options(TranscodeStrategy.FULL_TRANSCODE, info)
        self.assertEqual((video.videoCodec, video.crf, video.preset, video.audioCodec), ("libx264", 20, "slow", "copy"))
        self.assertEqual((audio.videoCodec, audio.audioCodec, audio.audioBitrate), ("copy", "aac", "128k"))
        self.assertEqual((full.videoCodec, full.crf, full.preset), (video.videoCodec, video.crf, video.preset))
        self.assertEqual((full.audioCodec, full.audioBitrate), (audio.audioCodec, audio.audioBitrate))

    def test_container_only_copies_streams(self) -> None:
        options = build_options(TranscodeStrategy.CONTAINER_ONLY, _info())
        self.assertEqual((options.videoCodec, options.audioCodec, options.outputFormat), ("copy", "copy", "mp4"))

    def test_estimates(self) -> None:
        self.assertEqual(estimate_seconds(600, TranscodeStrategy.VIDEO_ONLY, "1920x1080"), 16)
        self.assertEqual(estimate_seconds(600, TranscodeStrategy.NOT_NEEDED, "1920x1080"), 0)
        self.assertEqual(estimate_seconds(60, TranscodeStrategy.CONTAINER_ONLY, "640x360"), 1)

    def test_format_duration(self) -> None:
        self.assertEqual(format_duration(45), "45 s")
        self.assertEqual(format_duration(125), "2 min 5 s")
        self.assertEqual(format_duration(3720), "1 h 2 min")


class TestDecide(unittest.IsolatedAsyncioTestCase):
    """End-to-end decisions through TranscodeDecisionMaker."""

    async def test_hevc_in_mkv_needs_video_only(self) -> None:
        """HEVC + AAC in MKV on a matrix without HEVC: video-only, CRF 23, fast, ~16s."""
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(None))
        info = _info(videoCodec="hevc", bitrate="8000")
        decision: TranscodeDecision = await maker.decide("/media/movie.mkv", info)
        self.assertEqual(decision.strategy, TranscodeStrategy.VIDEO_ONLY)
        self.assertEqual(decision.options.crf, 23)
        self.assertEqual(decision.options.preset, "fast")
        self.assertEqual(decision.options.audioCodec, "copy")
        self.assertEqual(decision.estimatedSeconds, 16)
        self.assertEqual(decision.priority, Priority.MEDIUM)
        self.assertEqual(decision.sourceDuration, 600.0)

    async def test_ac3_in_mp4_needs_audio_only(self) -> None:
        """H.264 + AC-3 in MP4 on a matrix without AC-3: audio-only at 128k."""
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info(audioCodec="ac3")))
        decision = await maker.decide("/media/clip.mp4")
        self.assertEqual(decision.strategy, TranscodeStrategy.AUDIO_ONLY)
        self.assertEqual(decision.options.audioBitrate, "128k")
        self.assertEqual(decision.options.videoCodec, "copy")
        self.assertTrue(any("AC-3" in reason for reason in decision.reasons))

    async def test_decision_reasons_are_immutable(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info(audioCodec="ac3")))
        decision = await maker.decide("/media/clip.mp4")
        self.assertIsInstance(decision.reasons, tuple)
        with self.assertRaises(AttributeError):
            decision.reasons.append("tampered")  # type: ignore[attr-defined]
        self.assertIsInstance(decision.model_dump(mode="json")["reasons"], list)

    async def test_probe_failure_falls_back_to_full_transcode(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(None))
        decision = await maker.decide("/media/broken.mp4")
        self.assertEqual(decision.strategy, TranscodeStrategy.FULL_TRANSCODE)
        self.assertEqual(decision.priority, Priority.HIGH)
        self.assertIn(METADATA_UNAVAILABLE_REASON, decision.reasons)
        self.assertEqual(decision.options.videoCodec, "libx264")

    async def test_prober_exception_never_propagates(self) -> None:
        async def exploding(_path: str) -> Optional[MediaProbeResult]:
            raise RuntimeError("boom")

        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=exploding)
        decision = await maker.decide("/media/x.mp4")
        self.assertEqual(decision.strategy, TranscodeStrategy.FULL_TRANSCODE)
        self.assertEqual(decision.priority, Priority.HIGH)

    async def test_compatible_file_not_needed(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info()))
        decision = await maker.decide("/media/ok.mp4")
        self.assertEqual(decision.strategy, TranscodeStrategy.NOT_NEEDED)
        self.assertEqual(decision.estimatedSeconds, 0)

    async def test_unsupported_container_only(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info()))
        decision = await maker.decide("file:///media/old.avi")
        self.assertEqual(decision.strategy, TranscodeStrategy.CONTAINER_ONLY)
        self.assertEqual(decision.priority, Priority.LOW)

    async def test_container_change_folded_into_encode(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info(videoCodec="hevc")))
        decision = await maker.decide("/media/old.avi")
        self.assertEqual(decision.strategy, TranscodeStrategy.VIDEO_ONLY)
        self.assertIn(CONTAINER_ALSO_CHANGES_REASON, decision.reasons)

    async def test_file_without_audio_never_needs_audio_transcode(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info(audioCodec="none")))
        decision = await maker.decide("/media/silent.mp4")
        self.assertEqual(decision.strategy, TranscodeStrategy.NOT_NEEDED)

    async def test_batch_isolates_failures(self) -> None:
        """One failing file degrades to a fallback without affecting the others."""

        async def probe(path: str) -> Optional[MediaProbeResult]:
            if "bad" in path:
                raise OSError("unreadable")
            return _info(audioCodec="dts") if "dts" in path else _info()

        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=probe)
        decisions = await maker.decide_batch(["/m/ok.mp4", "/m/bad.mp4", "/m/dts.mp4"])
        self.assertEqual(list(decisions), ["/m/ok.mp4", "/m/bad.mp4", "/m/dts.mp4"])
        self.assertEqual(decisions["/m/ok.mp4"].strategy, TranscodeStrategy.NOT_NEEDED)
        self.assertEqual(decisions["/m/bad.mp4"].strategy, TranscodeStrategy.FULL_TRANSCODE)
        self.assertEqual(decisions["/m/dts.mp4"].strategy, TranscodeStrategy.AUDIO_ONLY)

        ordered = [path for path, _ in sort_by_priority(decisions)]
        self.assertEqual(ordered, ["/m/bad.mp4", "/m/dts.mp4", "/m/ok.mp4"])

        summary = summarize(decisions)
        self.assertEqual(summary.totalFiles, 3)
        self.assertEqual(summary.needsTranscode, 2)
        self.assertEqual(summary.highPriorityCount, 1)
        self.assertEqual(summary.strategyBreakdown[TranscodeStrategy.AUDIO_ONLY.value], 1)

    async def test_recommendation(self) -> None:
        maker = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info(videoCodec="hevc")))
        recommendation = await maker.recommend("/media/movie.mkv")
        self.assertEqual(recommendation.strategy, TranscodeStrategy.VIDEO_ONLY)
        self.assertTrue(recommendation.canExecute)
        self.assertIn("16 s", recommendation.humanReadableRecommendation)
        self.assertIn("• ", recommendation.humanReadableRecommendation)

        maker_ok = TranscodeDecisionMaker(matrix=BROWSER_MATRIX, prober=_prober(_info()))
        self.assertFalse((await maker_ok.recommend("/media/ok.mp4")).canExecute)


if __name__ == "__main__":
    unittest.main()
