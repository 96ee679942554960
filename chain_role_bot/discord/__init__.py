from .client import ChainRoleBot
from .commands import register_commands
from .roles import DiscordRoleGrantor

__all__ = ["ChainRoleBot", "DiscordRoleGrantor", "register_commands"]
