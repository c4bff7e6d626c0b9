"""Versioned extraction prompts handed to the external classifier.

Versions are monotonically increasing integers (UNIQUE); at most one prompt is
active. Activating a prompt deactivates every other one in the same
transaction. Every change is audited.
"""

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from momorecon.common.auth import SMS_PARSER_UPDATE, AdminPrincipal
from momorecon.common.errors import MatchConflict, NotFound
from momorecon.common.logging import logger
from momorecon.services.audit.service import AuditLog, snapshot
from momorecon.services.reconciler.models import ParserPrompt


class ParserPromptService:
    def __init__(self, session_factory, audit: AuditLog | None = None) -> None:
        self.session_factory = session_factory
        self.audit = audit or AuditLog()

    def list_prompts(self, actor: AdminPrincipal) -> list[ParserPrompt]:
        actor.require(SMS_PARSER_UPDATE)
        with self.session_factory() as db:
            return list(db.execute(select(ParserPrompt).order_by(ParserPrompt.version.desc())).scalars())

    def create_prompt(self, label: str, body: str, actor: AdminPrincipal, activate: bool = False) -> ParserPrompt:
        """Store a new version; the next version number is max + 1."""

        actor.require(SMS_PARSER_UPDATE)
        with self.session_factory() as db:
            try:
                latest = db.execute(select(func.max(ParserPrompt.version))).scalar_one()
                prompt = ParserPrompt(
                    label=label.strip(),
                    body=body,
                    version=(latest or 0) + 1,
                    is_active=False,
                    created_by=actor.user_id,
                )
                db.add(prompt)
                db.flush()
                self.audit.record(db, "parser.prompt.create", "parser_prompt", prompt.id, None, snapshot(prompt), actor.user_id)
                if activate:
                    self._activate(db, prompt, actor)
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise MatchConflict("another prompt version was created concurrently; retry") from exc
        logger.info("parser_prompt_created version=%s actor=%s", prompt.version, actor.user_id)
        return prompt

    def _activate(self, db, prompt: ParserPrompt, actor: AdminPrincipal) -> None:
        before = snapshot(prompt)
        db.execute(
            update(ParserPrompt)
            .where(ParserPrompt.id != prompt.id, ParserPrompt.is_active.is_(True))
            .values(is_active=False)
        )
        db.execute(update(ParserPrompt).where(ParserPrompt.id == prompt.id).values(is_active=True))
        self.audit.record(db, "parser.prompt.activate", "parser_prompt", prompt.id, before, snapshot(prompt), actor.user_id)

    def activate_prompt(self, prompt_id: str, actor: AdminPrincipal) -> ParserPrompt:
        actor.require(SMS_PARSER_UPDATE)
        with self.session_factory() as db:
            prompt = db.get(ParserPrompt, prompt_id)
            if prompt is None:
                raise NotFound(f"parser prompt {prompt_id} not found")
            self._activate(db, prompt, actor)
            db.commit()
        logger.info("parser_prompt_activated version=%s actor=%s", prompt.version, actor.user_id)
        return prompt
