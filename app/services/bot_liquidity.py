"""
Synthetic liquidity ("bots") for Party Crisis rooms.

Each game gets a per-room target total. During betting, batches of synthetic
bets are generated that steer every room towards its target without ever
producing a suspiciously round amount.
"""
import logging
import random
from dataclasses import dataclass
from typing import Dict, List, Mapping, Tuple

import config

logger = logging.getLogger(__name__)

BOT_NAMES: Tuple[str, ...] = (
    # Animals
    "Bear", "Wolf", "Tiger", "Fox", "Lion", "Eagle", "Shark", "Hawk", "Panda", "Dragon",
    "Deer", "Rabbit", "Snake", "Horse", "Falcon", "Leopard", "Jaguar", "Panther", "Lynx", "Cobra",
    "Raven", "Crow", "Owl", "Rhino", "Buffalo", "Gorilla", "Cheetah", "Cougar", "Vulture", "Scorpion",
    # Myth
    "Phoenix", "Griffin", "Titan", "Zeus", "Thor", "Odin", "Athena", "Apollo", "Ares", "Hades",
    "Poseidon", "Hercules", "Perseus", "Achilles", "Medusa", "Hydra", "Cerberus", "Minotaur", "Cyclops", "Sphinx",
    "Valkyrie", "Fenrir", "Loki", "Freya", "Baldur",
    # Game classes
    "Shadow", "Ghost", "Blade", "Storm", "Viper", "Hunter", "Warrior", "Knight", "Ranger", "Mage",
    "Rogue", "Ninja", "Samurai", "Wizard", "Archer", "Assassin", "Paladin", "Berserker", "Sorcerer", "Warlock",
    "Druid", "Monk", "Barbarian", "Necromancer", "Bard", "Cleric", "Templar", "Gladiator", "Reaper", "Slayer",
    # Sky
    "Sky", "Cloud", "Thunder", "Lightning", "Frost", "Blaze", "Star", "Moon", "Nova", "Solar",
    "Comet", "Meteor", "Aurora", "Eclipse", "Zenith", "Horizon", "Dawn", "Dusk", "Twilight", "Midnight",
    "Solstice", "Equinox", "Nebula", "Galaxy", "Cosmos",
    # Colors
    "Crimson", "Azure", "Emerald", "Onyx", "Silver", "Golden", "Ruby", "Sapphire", "Amber", "Jade",
    "Pearl", "Diamond", "Obsidian", "Ivory", "Ebony", "Scarlet", "Violet", "Indigo", "Cyan", "Magenta",
    # Abstract
    "Phantom", "Mystic", "Legend", "Champion", "Master", "Alpha", "Omega", "Prime", "Apex", "Nexus",
    "Vortex", "Chaos", "Fury", "Wrath", "Valor", "Honor", "Glory", "Victory", "Destiny", "Infinity",
)


@dataclass(frozen=True)
class BotSettings:
    room_count: int = config.ROOM_COUNT
    room_bet_min: int = config.ROOM_BET_MIN
    room_bet_max: int = config.ROOM_BET_MAX
    bot_bet_min: int = config.BOT_BET_MIN
    bot_bet_max: int = config.BOT_BET_MAX
    bot_count_max: int = config.BOT_COUNT_MAX


def room_targets(rng: random.Random, settings: BotSettings) -> Dict[int, int]:
    return {
        room: int(rng.uniform(settings.room_bet_min, settings.room_bet_max))
        for room in range(1, settings.room_count + 1)
    }


def pick_room(rng: random.Random, targets: Mapping[int, int], totals: Mapping[int, int]) -> int:
    """Room with the largest positive deficit; uniform when every room is at target."""
    best_room, best_deficit = None, 0
    for room in sorted(targets):
        deficit = targets[room] - totals.get(room, 0)
        if deficit > best_deficit:
            best_room, best_deficit = room, deficit
    if best_room is None:
        return rng.randint(1, len(targets))
    return best_room


def avoid_round(rng: random.Random, amount: int, low: int, high: int) -> int:
    if amount % 10 != 0:
        return amount
    nudge = rng.randint(1, 9)
    if amount + nudge <= high:
        return amount + nudge
    # Upper edge of the band: go down instead, staying above the floor
    return max(low, amount - nudge)


def bot_amount(rng: random.Random, deficit: int, settings: BotSettings) -> int:
    if deficit > 0:
        average_needed = deficit / rng.uniform(2, 5)
        base = average_needed * rng.uniform(0.6, 2.0)
        amount = base + rng.uniform(-40, 40) + rng.uniform(-60, 60)
    else:
        amount = rng.uniform(50, 250) * rng.uniform(0.5, 1.5)
    amount = int(amount + rng.uniform(-20, 20))
    amount = max(settings.bot_bet_min, min(settings.bot_bet_max, amount))
    return avoid_round(rng, amount, settings.bot_bet_min, settings.bot_bet_max)


def _batch(
    rng: random.Random, size: int, targets: Mapping[int, int], totals: Mapping[int, int], settings: BotSettings
) -> List[Tuple[int, int]]:
    running = dict(totals)
    batch = []
    for _ in range(size):
        room = pick_room(rng, targets, running)
        amount = bot_amount(rng, targets[room] - running.get(room, 0), settings)
        running[room] = running.get(room, 0) + amount
        batch.append((room, amount))
    return batch


def targeted_batch(
    rng: random.Random, targets: Mapping[int, int], totals: Mapping[int, int], settings: BotSettings
) -> List[Tuple[int, int]]:
    """Early-window batch of 3-8 bets aimed at the rooms furthest below target.

    Returns ``(room_id, amount)`` pairs.
    """
    return _batch(rng, rng.randint(3, 8), targets, totals, settings)


def ambient_batch(
    rng: random.Random, targets: Mapping[int, int], totals: Mapping[int, int], settings: BotSettings
) -> List[Tuple[int, int]]:
    """Late-window batch of 1-3 bets, still steered by room deficit."""
    return _batch(rng, rng.randint(1, 3), targets, totals, settings)


def bot_name(rng: random.Random) -> str:
    return rng.choice(BOT_NAMES)
