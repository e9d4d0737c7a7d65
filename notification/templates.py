#!/usr/bin/env python3
"""
Template Store

Holds one template per notification template ref and renders it for a
channel. Templates are Jinja2 strings rendered in a sandbox with
StrictUndefined, so a missing variable is a TemplateError rather than an
empty string.

Usage:
    store = TemplateStore()
    store.register(NotificationTemplate(
        ref='task_assigned',
        subject='New task: {{ task_name }}',
        body='{{ assigner }} assigned you {{ task_name }}',
        channels={'sms': ChannelTemplate(body='Task: {{ task_name }}')},
    ))
    message = store.render('task_assigned', data, Channel.EMAIL)
"""

import logging
import threading
from typing import Any, Dict, List, Optional

import jinja2
import yaml
from jinja2 import StrictUndefined
from jinja2.sandbox import SandboxedEnvironment
from pydantic import BaseModel, Field

from notification.exceptions import TemplateError
from notification.models import Channel, RenderedMessage

logger = logging.getLogger(__name__)

# Transport limits applied after rendering
SMS_MAX_LENGTH = 480
PUSH_MAX_LENGTH = 1024


class ChannelTemplate(BaseModel):
    """Per-channel override. Missing parts fall back to the default."""
    subject: Optional[str] = None
    body: Optional[str] = None


class NotificationTemplate(BaseModel):
    ref: str
    subject: str = ""
    body: str
    channels: Dict[Channel, ChannelTemplate] = Field(default_factory=dict)

    def parts_for(self, channel: Channel) -> tuple:
        override = self.channels.get(channel)
        subject = (override.subject if override and override.subject is not None else self.subject)
        body = (override.body if override and override.body is not None else self.body)
        return subject, body


class TemplateStore:
    """Registry and renderer for notification templates."""

    def __init__(self, templates: Optional[List[NotificationTemplate]] = None):
        self._env = SandboxedEnvironment(undefined=StrictUndefined, autoescape=False)
        self._templates: Dict[str, NotificationTemplate] = {}
        self._compiled: Dict[tuple, jinja2.Template] = {}
        self._lock = threading.Lock()
        for template in templates or []:
            self.register(template)

    @classmethod
    def from_yaml(cls, path: str) -> "TemplateStore":
        """Load templates from a YAML file with a top-level ``templates`` list."""
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        templates = [NotificationTemplate(**item) for item in data.get('templates', [])]
        logger.info(f"Loaded {len(templates)} notification templates from {path}")
        return cls(templates)

    def register(self, template: NotificationTemplate) -> None:
        with self._lock:
            self._templates[template.ref] = template
            self._compiled = {k: v for k, v in self._compiled.items() if k[0] != template.ref}

    def has(self, ref: str) -> bool:
        return ref in self._templates

    def refs(self) -> List[str]:
        return sorted(self._templates)

    def _compile(self, ref: str, channel: Channel, part: str, source: str) -> jinja2.Template:
        key = (ref, channel, part)
        compiled = self._compiled.get(key)
        if compiled is None:
            try:
                compiled = self._env.from_string(source)
            except jinja2.TemplateSyntaxError as e:
                raise TemplateError(f"Template '{ref}' ({part}) has a syntax error: {e}") from e
            with self._lock:
                self._compiled[key] = compiled
        return compiled

    def render(self, template_ref: str, data: Dict[str, Any], channel: Channel) -> RenderedMessage:
        """
        Render subject and body for a channel.

        Raises:
            TemplateError: unknown ref, syntax error or missing variable
        """
        template = self._templates.get(template_ref)
        if template is None:
            raise TemplateError(f"Unknown template: {template_ref}")

        subject_src, body_src = template.parts_for(channel)
        try:
            subject = self._compile(template_ref, channel, 'subject', subject_src).render(**data)
            body = self._compile(template_ref, channel, 'body', body_src).render(**data)
        except jinja2.UndefinedError as e:
            raise TemplateError(f"Template '{template_ref}' missing variable: {e.message}") from e
        except jinja2.TemplateError as e:
            raise TemplateError(f"Template '{template_ref}' failed to render: {e}") from e

        if channel == Channel.SMS and len(body) > SMS_MAX_LENGTH:
            body = body[:SMS_MAX_LENGTH - 3] + "..."
        elif channel == Channel.PUSH and len(body) > PUSH_MAX_LENGTH:
            body = body[:PUSH_MAX_LENGTH - 3] + "..."

        return RenderedMessage(channel=channel, subject=subject.strip(), body=body)
