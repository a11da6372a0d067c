"""
Message Bus.

Le message bus est le point d'entrée unique du service : les routes
HTTP y envoient des commands, le consommateur Redis y envoie les events
du service produit.

Fonctionnement :
1. Le message est validé (forme) ; invalide -> Result VALIDATION
2. Le bus trouve le handler correspondant
3. Le handler est exécuté avec ses dépendances injectées

Différences clés :
- Une command a exactement UN handler ; son Result revient à l'appelant
- Un event entrant passe d'abord par la garde d'idempotence : une
  redélivrance renvoie le résultat mémorisé sans rejouer le handler.
  Une panne (ou une issue inconnue) remonte en exception pour que le
  message ne soit pas acquitté et soit relivré.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Union

from inventory.domain import commands, events
from inventory.domain.model import ErrorKind, Result
from inventory.service_layer import unit_of_work
from inventory.service_layer.idempotency import IdempotencyGuard

logger = logging.getLogger(__name__)

Message = Union[commands.Command, events.Event]


class RetryableEventFailure(Exception):
    """Levée quand un event entrant doit être relivré (issue inconnue, conflit)."""

    def __init__(self, event: events.Event, result: Result):
        super().__init__(f"{type(event).__name__} : {result.error} {result.message}")
        self.event = event
        self.result = result


RETRYABLE = {ErrorKind.UNKNOWN, ErrorKind.CONFLICT, ErrorKind.UPSTREAM_UNAVAILABLE}


class MessageBus:
    """
    Message Bus avec injection de dépendances.

    Les dépendances (settings, clock, sleep, etc.) sont injectées
    à la construction et transmises automatiquement aux handlers
    par introspection de leurs signatures. Chaque message reçoit son
    propre unit of work, ce qui rend le bus utilisable depuis
    plusieurs threads.
    """

    def __init__(
        self,
        uow_factory: Callable[[], unit_of_work.AbstractUnitOfWork],
        event_handlers: dict[type[events.Event], list[Callable]],
        command_handlers: dict[type[commands.Command], Callable],
        guard: IdempotencyGuard | None = None,
        dependencies: dict[str, Any] | None = None,
    ):
        self.uow_factory = uow_factory
        self.event_handlers = event_handlers
        self.command_handlers = command_handlers
        self.guard = guard or IdempotencyGuard()
        self.dependencies = dependencies or {}

    def handle(self, message: Message) -> Any:
        """Traite un message et retourne le résultat de son handler."""
        if isinstance(message, events.ProductEvent):
            return self._handle_event(message)
        if isinstance(message, commands.Command):
            return self._handle_command(message)
        raise ValueError(f"Message de type inconnu : {type(message)}")

    def _handle_event(self, event: events.ProductEvent) -> Result:
        error = event.validate()
        if error:
            logger.warning("Event rejeté %s : %s", type(event).__name__, error)
            return Result.failure(ErrorKind.VALIDATION, error)

        key = event.dedup_key
        known = self.guard.get(key)
        if known is not None:
            logger.info("Event déjà traité, ignoré : %s", key)
            return known

        result = Result.success()
        for handler in self.event_handlers.get(type(event), []):
            logger.debug("Traitement de l'event %s avec %s", event, handler.__name__)
            result = self._call_handler(handler, event)
            if not result.ok and result.error in RETRYABLE:
                raise RetryableEventFailure(event, result)
            if not result.ok:
                logger.warning("Event %s en échec : %s", key, result.message)
        self.guard.remember(key, result)
        return result

    def _handle_command(self, command: commands.Command) -> Any:
        """
        Dispatch une command vers son unique handler.

        Une command mal formée n'atteint jamais son handler.
        """
        logger.debug("Traitement de la command %s", command)
        handler = self.command_handlers.get(type(command))
        if handler is None:
            raise ValueError(f"Aucun handler pour la command {type(command)}")
        error = command.validate()
        if error:
            logger.info("Command %s rejetée : %s", type(command).__name__, error)
            return Result.failure(ErrorKind.VALIDATION, error)
        return self._call_handler(handler, command)

    def _call_handler(self, handler: Callable, message: Message) -> Any:
        """
        Appelle un handler en injectant les dépendances nécessaires.

        Le premier paramètre est toujours le message lui-même ; les
        suivants sont résolus par nom dans le dictionnaire de
        dépendances, `uow` recevant un unit of work neuf.
        """
        params = list(inspect.signature(handler).parameters)
        kwargs: dict[str, Any] = {}
        for name in params[1:]:
            if name == "uow":
                kwargs[name] = self.uow_factory()
            elif name in self.dependencies:
                kwargs[name] = self.dependencies[name]
        return handler(message, **kwargs)
