"""
Verification Service - the document -> selfie -> analysis state machine

    Idle --document--> ScanningDocument --(scan delay)--> CapturingBiometric
         --selfie--> Analyzing --> Completed | Failed

Completed and Failed are terminal for the attempt; reset() starts over.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from sentinel.core.errors import (AnalysisUnavailable, FlowBusy, InvalidTransition,
                                  MissingDocument)
from sentinel.db.accounts import CredentialStore
from sentinel.models.models import FlowPhase, FlowState, Session, VerificationResult
from sentinel.services.session_service import SessionManager

log = logging.getLogger(__name__)

Analyzer = Callable[[str, str], Awaitable[VerificationResult]]


class VerificationFlow:
    """
    One verification attempt at a time.

    At most one analysis call is in flight: every entry point refuses to act
    while the flow is Analyzing.
    """

    def __init__(self, analyze: Analyzer, accounts: CredentialStore, sessions: SessionManager,
                 scan_delay_ms: int = 800, analysis_timeout_sec: Optional[float] = None):
        self._analyze = analyze
        self.accounts = accounts
        self.sessions = sessions
        self.scan_delay_ms = scan_delay_ms
        self.analysis_timeout_sec = analysis_timeout_sec
        self.state = FlowState()
        self._scan_task: Optional[asyncio.Task] = None
        # set when the session that started the running analysis went away
        self._detached = False

    @property
    def phase(self) -> FlowPhase:
        return self.state.phase

    def _require(self, *phases: FlowPhase):
        if self.state.phase == FlowPhase.ANALYZING:
            raise FlowBusy()
        if self.state.phase not in phases:
            raise InvalidTransition(
                f"Cannot do that while verification is {self.state.phase.value}")

    def _cancel_scan(self):
        if self._scan_task and not self._scan_task.done():
            self._scan_task.cancel()
        self._scan_task = None

    def reset(self) -> FlowState:
        """Back to a fresh Idle attempt (retry, new attempt or abort)."""
        if self.state.phase == FlowPhase.ANALYZING:
            raise FlowBusy()
        self._cancel_scan()
        self.state = FlowState()
        return self.state

    def detach(self) -> FlowState:
        """
        Drop the current attempt because the session changed.

        An idle or mid-flow attempt is reset straight away. A running analysis
        keeps going: its result is still stored on the account that started it,
        then the flow returns to Idle instead of showing the outcome to whoever
        is signed in by then.
        """
        if self.state.phase != FlowPhase.ANALYZING:
            return self.reset()
        self._detached = True
        log.info("Running analysis detached from the session")
        return self.state

    def _release(self) -> bool:
        if not self._detached:
            return False
        self._detached = False
        self.state = FlowState()
        log.info("Detached analysis settled; flow back to Idle")
        return True

    async def submit_document(self, image: str) -> FlowState:
        self._require(FlowPhase.IDLE)
        self.state = self.state.evolve(document_image=image, phase=FlowPhase.SCANNING_DOCUMENT)
        log.info("Document received; scanning")
        self._scan_task = asyncio.create_task(self._finish_scan())
        return self.state

    async def _finish_scan(self):
        await asyncio.sleep(self.scan_delay_ms / 1000)
        if self.state.phase == FlowPhase.SCANNING_DOCUMENT:
            self.state = self.state.evolve(phase=FlowPhase.CAPTURING_BIOMETRIC)
            log.info("Scan complete; awaiting selfie")

    async def wait_for_capture(self) -> FlowState:
        """Wait for a pending ScanningDocument -> CapturingBiometric advance."""
        task = self._scan_task
        if task:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                # only an aborted scan is expected here; our own cancellation propagates
                if not task.cancelled():
                    raise
        return self.state

    def _fail(self, error: Exception) -> FlowState:
        kind = getattr(error, "code", type(error).__name__)
        self.state = self.state.evolve(phase=FlowPhase.FAILED, error=str(error), error_kind=kind)
        log.warning("Verification failed (%s): %s", kind, error)
        return self.state

    async def _run_analysis(self, document_image: str, selfie_image: str) -> VerificationResult:
        if self.analysis_timeout_sec is None:
            return await self._analyze(document_image, selfie_image)
        try:
            return await asyncio.wait_for(self._analyze(document_image, selfie_image),
                                          timeout=self.analysis_timeout_sec)
        except asyncio.TimeoutError as e:
            raise AnalysisUnavailable(
                f"Analysis timed out after {self.analysis_timeout_sec:g} seconds") from e

    async def submit_selfie(self, image: str, session: Optional[Session]) -> Optional[Session]:
        """
        Store the selfie and run the analysis.

        On success the result is appended to the session's account and the
        refreshed session is returned; without a session the result is only kept
        in the flow state. Failures leave the flow in Failed and persist nothing.
        A detached attempt (see `detach`) ends in Idle and returns None.
        """
        self._require(FlowPhase.CAPTURING_BIOMETRIC)
        self.state = self.state.evolve(selfie_image=image, phase=FlowPhase.ANALYZING)

        document_image = self.state.document_image
        if not document_image:
            self._fail(MissingDocument())
            return session

        log.info("Analyzing document and selfie")
        try:
            result = await self._run_analysis(document_image, image)
        except AnalysisUnavailable as e:
            self._fail(e)
            return None if self._release() else session
        except asyncio.CancelledError:
            self._fail(AnalysisUnavailable("Analysis was cancelled"))
            self._release()
            raise
        except Exception as e:
            log.exception("Unexpected analysis error")
            self._fail(AnalysisUnavailable(f"Verification failed: {e}"))
            return None if self._release() else session

        try:
            if session is not None:
                await self.accounts.append_verification_result(session.id, result)
        finally:
            released = self._release()
            if not released:
                self.state = self.state.evolve(phase=FlowPhase.COMPLETED, result=result)
        if released or session is None:
            return None
        return await self.sessions.refresh(session.id)
