"""
Wiring of the gateway's long-lived objects.

One VoiceClientService per app: it owns the SessionStore, the IdleScheduler
and the TurnOrchestrator, and is handed to request handlers through
app.state instead of module-level globals.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .agent import Agent, OpenAICompatAgent
from .config import VoiceClientConfig
from .idle import IdleScheduler
from .session import SessionStore
from .transcription import SonioxTranscriber, Transcriber
from .turn import TurnOrchestrator


@dataclass
class VoiceClientService:
    config: VoiceClientConfig
    store: SessionStore
    scheduler: IdleScheduler
    orchestrator: TurnOrchestrator

    @classmethod
    def build(
        cls,
        config: VoiceClientConfig,
        *,
        store: Optional[SessionStore] = None,
        transcriber: Optional[Transcriber] = None,
        agent: Optional[Agent] = None,
    ) -> "VoiceClientService":
        store = store or SessionStore()
        scheduler = IdleScheduler(
            store,
            idle_timeout_seconds=config.idle_timeout_seconds,
            sweep_interval_seconds=config.sweep_interval_seconds,
        )
        transcriber = transcriber or SonioxTranscriber(
            config.soniox_api_key,
            model=config.soniox_model,
            language_hints=config.soniox_language_hints,
        )
        agent = agent or OpenAICompatAgent(
            config.agent_base_url,
            model=config.agent_model,
            api_key=config.agent_api_key,
            agent_name=config.agent_name,
            timeout_seconds=config.agent_timeout_seconds,
        )
        orchestrator = TurnOrchestrator(store, transcriber, agent, config)
        return cls(config=config, store=store, scheduler=scheduler, orchestrator=orchestrator)

    async def start(self) -> None:
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        self.store.clear_all()
