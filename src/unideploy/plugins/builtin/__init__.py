"""Plugins shipped with Unideploy."""

from unideploy.plugins.builtin.image_policy import ImagePolicyGate
from unideploy.plugins.builtin.telegram import TelegramNotifier

PLUGINS = [TelegramNotifier, ImagePolicyGate]

__all__ = ["PLUGINS", "ImagePolicyGate", "TelegramNotifier"]
