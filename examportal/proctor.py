import base64
import binascii
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import cv2
import numpy as np


@dataclass
class ProctorResult:
    violation: bool
    incident_type: Optional[str] = None
    message: Optional[str] = None


class ProctorEngine:
    """Turns raw proctoring signals into ledger incident types.

    Stateless per call; per-attempt state (cooldowns, streaks) lives in the
    ``session_state`` dict the caller keeps for each attempt, usually one
    handed out by ``ProctorStateStore``.

    Inputs:
    - ``image_data_url``: data:image/jpeg;base64,... or None
    - ``audio_level``: float 0..1 (client-computed)
    - ``client_incident_type``: a browser-side event such as ``tab-change``
    """

    def __init__(
        self,
        *,
        audio_threshold: float = 0.35,
        min_violation_gap_sec: float = 2.5,
        face_counter: Optional[Callable[[Any], int]] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.audio_threshold = audio_threshold
        self.min_violation_gap_sec = min_violation_gap_sec
        self._clock = clock
        self._face_counter = face_counter or self._count_faces
        self._face_cascade = None

    def _cooldown_ok(self, session_state: Dict[str, Any], key: str) -> bool:
        now = self._clock()
        last = float(session_state.get(f'last_{key}_ts', 0.0))
        if now - last < self.min_violation_gap_sec:
            return False
        session_state[f'last_{key}_ts'] = now
        return True

    @staticmethod
    def _decode_image(image_data_url: str):
        if ',' in image_data_url:
            image_data_url = image_data_url.split(',', 1)[1]
        try:
            raw = base64.b64decode(image_data_url)
        except (binascii.Error, ValueError):
            return None
        arr = np.frombuffer(raw, dtype=np.uint8)
        if arr.size == 0:
            return None
        return cv2.imdecode(arr, cv2.IMREAD_COLOR)

    def _count_faces(self, img) -> int:
        if self._face_cascade is None:
            self._face_cascade = cv2.CascadeClassifier(
                cv2.data.haarcascades + 'haarcascade_frontalface_default.xml'
            )
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        faces = self._face_cascade.detectMultiScale(gray, scaleFactor=1.1, minNeighbors=5, minSize=(40, 40))
        return 0 if faces is None else len(faces)

    def analyze_tab_event(self, session_state: Dict[str, Any], event_name: str) -> ProctorResult:
        if not self._cooldown_ok(session_state, 'tab'):
            return ProctorResult(False)
        return ProctorResult(True, 'tab-change', event_name)

    def analyze_audio(self, session_state: Dict[str, Any], audio_level) -> ProctorResult:
        if audio_level is None:
            return ProctorResult(False)

        try:
            lvl = float(audio_level)
        except (TypeError, ValueError):
            return ProctorResult(False)

        if lvl < self.audio_threshold:
            session_state['noise_streak'] = 0
            return ProctorResult(False)

        # two consecutive loud samples before flagging
        streak = int(session_state.get('noise_streak', 0)) + 1
        session_state['noise_streak'] = streak
        if streak < 2:
            return ProctorResult(False)

        if not self._cooldown_ok(session_state, 'audio'):
            return ProctorResult(False)

        session_state['noise_streak'] = 0
        return ProctorResult(True, 'speaking-detected', 'Background noise / talking detected')

    def analyze_frame(self, session_state: Dict[str, Any], image_data_url: Optional[str]) -> ProctorResult:
        # A missing frame is not flagged.
        if not image_data_url:
            return ProctorResult(False)

        img = self._decode_image(image_data_url)
        if img is None:
            return ProctorResult(False)

        face_count = self._face_counter(img)

        if face_count == 0:
            if not self._cooldown_ok(session_state, 'noface'):
                return ProctorResult(False)
            return ProctorResult(True, 'face-not-visible', 'No face detected')

        if face_count >= 2:
            if not self._cooldown_ok(session_state, 'multiface'):
                return ProctorResult(False)
            return ProctorResult(True, 'multiple-faces', f'{face_count} faces detected')

        return ProctorResult(False)

    def analyze(
        self,
        *,
        session_state: Dict[str, Any],
        image_data_url: Optional[str],
        audio_level=None,
        client_incident_type: Optional[str] = None,
    ) -> ProctorResult:
        if client_incident_type:
            if not self._cooldown_ok(session_state, 'client'):
                return ProctorResult(False)
            # unknown client types are normalised by the ledger
            return ProctorResult(True, str(client_incident_type), str(client_incident_type))

        video_res = self.analyze_frame(session_state, image_data_url)
        if video_res.violation:
            return video_res

        return self.analyze_audio(session_state, audio_level)


class ProctorStateStore:
    """Per-attempt ``session_state`` dicts, dropped once an attempt closes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._states: Dict[int, Dict[str, Any]] = {}

    def get(self, attempt_id: int) -> Dict[str, Any]:
        with self._lock:
            return self._states.setdefault(attempt_id, {})

    def discard(self, attempt_id: int) -> None:
        with self._lock:
            self._states.pop(attempt_id, None)

    def clear(self) -> None:
        with self._lock:
            self._states.clear()

    def __contains__(self, attempt_id) -> bool:
        return attempt_id in self._states

    def __len__(self) -> int:
        return len(self._states)


# shared by the Socket.IO handlers and the routes that close attempts
proctor_states = ProctorStateStore()
