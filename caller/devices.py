"""Camera and microphone capture as aiortc media tracks."""
from __future__ import annotations

import asyncio
import fractions
import logging
from typing import List, Optional, Sequence

import av
import cv2
import numpy as np
import sounddevice as sd
from aiortc import MediaStreamTrack, VideoStreamTrack

from .errors import MediaAcquisitionError
from .media import MediaConstraints

logger = logging.getLogger(__name__)

FRAME_DURATION_SECONDS = 0.02  # 20ms audio frames
AUDIO_QUEUE_SIZE = 50


class CameraVideoTrack(VideoStreamTrack):
    """Video track reading BGR frames from an OpenCV capture device."""

    def __init__(self, capture: cv2.VideoCapture, width: int, height: int) -> None:
        super().__init__()
        self._capture: Optional[cv2.VideoCapture] = capture
        self._width = width
        self._height = height
        self._blank = np.zeros((height, width, 3), dtype=np.uint8)

    async def recv(self) -> av.VideoFrame:
        pts, time_base = await self.next_timestamp()
        image = await asyncio.to_thread(self._read_frame)
        frame = av.VideoFrame.from_ndarray(image if image is not None else self._blank, format="bgr24")
        frame.pts = pts
        frame.time_base = time_base
        return frame

    def _read_frame(self) -> Optional[np.ndarray]:
        capture = self._capture
        if capture is None:
            return None
        ret, image = capture.read()
        if not ret:
            return None
        if image.shape[1] != self._width or image.shape[0] != self._height:
            image = cv2.resize(image, (self._width, self._height))
        return image

    def stop(self) -> None:
        super().stop()
        capture = self._capture
        self._capture = None
        if capture is not None:
            capture.release()
            logger.debug("Camera released")


class MicrophoneAudioTrack(MediaStreamTrack):
    """Audio track fed by a sounddevice input stream on the audio thread."""

    kind = "audio"

    def __init__(self, sample_rate: int, channels: int) -> None:
        super().__init__()
        self._sample_rate = sample_rate
        self._channels = channels
        self._frame_samples = int(sample_rate * FRAME_DURATION_SECONDS)
        self._queue: "asyncio.Queue[np.ndarray]" = asyncio.Queue(maxsize=AUDIO_QUEUE_SIZE)
        self._loop = asyncio.get_running_loop()
        self._stream: Optional[sd.InputStream] = None
        self._pts = 0

    def start(self) -> None:
        self._stream = sd.InputStream(
            samplerate=self._sample_rate,
            channels=self._channels,
            dtype="int16",
            blocksize=self._frame_samples,
            callback=self._capture_callback,
        )
        self._stream.start()

    def _capture_callback(self, indata, frames, time_info, status) -> None:  # pragma: no cover - audio callback
        if status:
            logger.warning("Audio input status: %s", status)
        samples = np.array(indata, dtype=np.int16).reshape(1, -1)
        self._loop.call_soon_threadsafe(self._enqueue, samples)

    def _enqueue(self, samples: np.ndarray) -> None:
        try:
            self._queue.put_nowait(samples)
        except asyncio.QueueFull:
            # Drop audio if the consumer falls behind
            pass

    async def recv(self) -> av.AudioFrame:
        samples = await self._queue.get()
        layout = "mono" if self._channels == 1 else "stereo"
        frame = av.AudioFrame.from_ndarray(samples, format="s16", layout=layout)
        frame.sample_rate = self._sample_rate
        frame.pts = self._pts
        frame.time_base = fractions.Fraction(1, self._sample_rate)
        self._pts += samples.shape[1] // self._channels
        return frame

    def stop(self) -> None:
        super().stop()
        stream = self._stream
        self._stream = None
        if stream is not None:
            stream.stop()
            stream.close()
            logger.debug("Microphone released")


class DeviceMediaProvider:
    """Opens the local camera and microphone as aiortc tracks."""

    async def acquire(self, constraints: MediaConstraints) -> List[MediaStreamTrack]:
        if not (constraints.audio or constraints.video):
            raise MediaAcquisitionError("At least one of audio or video must be requested")
        tracks: List[MediaStreamTrack] = []
        try:
            if constraints.video:
                capture = await asyncio.to_thread(self._open_camera, constraints)
                tracks.append(CameraVideoTrack(capture, constraints.width, constraints.height))
            if constraints.audio:
                tracks.append(self._open_microphone(constraints))
        except MediaAcquisitionError:
            self.release(tracks)
            raise
        except Exception as exc:
            self.release(tracks)
            raise MediaAcquisitionError(f"Capture device failed: {exc}") from exc
        logger.info("Acquired local media: %s", ", ".join(track.kind for track in tracks))
        return tracks

    def release(self, tracks: Sequence[MediaStreamTrack]) -> None:
        for track in tracks:
            try:
                track.stop()
            except Exception:
                logger.exception("Failed to stop local %s track", track.kind)

    def _open_camera(self, constraints: MediaConstraints) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(constraints.camera_index)
        if not capture.isOpened():
            capture.release()
            raise MediaAcquisitionError(f"Camera {constraints.camera_index} could not be opened")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, constraints.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, constraints.height)
        capture.set(cv2.CAP_PROP_FPS, constraints.frame_rate)
        return capture

    def _open_microphone(self, constraints: MediaConstraints) -> MicrophoneAudioTrack:
        track = MicrophoneAudioTrack(constraints.sample_rate, constraints.channels)
        try:
            track.start()
        except (sd.PortAudioError, ValueError) as exc:
            track.stop()
            raise MediaAcquisitionError(f"Microphone could not be opened: {exc}") from exc
        return track
