# laskbot/modules/match_tracking/services/renderer.py

import asyncio
import logging
from io import BytesIO

from PIL import Image, ImageDraw, ImageFont

from laskbot.modules.match_tracking.models import TrackedAccount
from laskbot.modules.match_tracking.services.notification_service import find_participant

logger = logging.getLogger(__name__)

WIDTH, HEIGHT = 900, 240
BACKGROUND = (10, 20, 25)
GOLD = (200, 170, 110)
RED = (220, 50, 50)
GREY = (130, 140, 150)
WHITE = (235, 235, 235)


def _font(size: int):
    try:
        return ImageFont.truetype("DejaVuSans-Bold.ttf", size)
    except OSError:
        return ImageFont.load_default()


def _to_png(canvas: Image.Image) -> bytes:
    bio = BytesIO()
    canvas.save(bio, format='PNG')
    return bio.getvalue()


def draw_lol_summary(account: TrackedAccount, match: dict) -> bytes:
    me = find_participant(match, account.puuid)
    if me is None:
        raise ValueError(f"Player {account.puuid} not found in match data")

    info = match.get('info') or {}
    canvas = Image.new('RGB', (WIDTH, HEIGHT), BACKGROUND)
    draw = ImageDraw.Draw(canvas)

    won = bool(me.get('win'))
    draw.text((40, 25), "VICTORY" if won else "DEFEAT", font=_font(42), fill=GOLD if won else RED)
    minutes = int(info.get('gameDuration', 0)) // 60
    draw.text((40, 85), f"{info.get('gameMode', 'CLASSIC')} | {minutes} min", font=_font(16), fill=GREY)

    cs = int(me.get('totalMinionsKilled', 0)) + int(me.get('neutralMinionsKilled', 0))
    stats = [
        ("PLAYER", account.riot_id, 40),
        ("CHAMPION", f"{me.get('championName', '?')} (lvl {me.get('champLevel', 0)})", 300),
        ("K / D / A", f"{me.get('kills', 0)} / {me.get('deaths', 0)} / {me.get('assists', 0)}", 560),
        ("CS", str(cs), 720),
        ("GOLD", f"{int(me.get('goldEarned', 0)):,}".replace(',', ' '), 790),
    ]
    header_font, value_font = _font(14), _font(20)
    for header, value, x in stats:
        draw.text((x, 135), header, font=header_font, fill=GREY)
        draw.text((x, 165), value, font=value_font, fill=WHITE)
    return _to_png(canvas)


def draw_tft_summary(account: TrackedAccount, match: dict) -> bytes:
    me = find_participant(match, account.puuid)
    if me is None:
        raise ValueError(f"Player {account.puuid} not found in TFT match data")

    info = match.get('info') or {}
    canvas = Image.new('RGB', (WIDTH, HEIGHT), BACKGROUND)
    draw = ImageDraw.Draw(canvas)

    placement = int(me.get('placement', 0))
    draw.text((40, 25), f"#{placement}", font=_font(48), fill=GOLD if placement <= 4 else RED)
    minutes = int(float(info.get('game_length', 0))) // 60
    draw.text((40, 90), f"Teamfight Tactics | Set {info.get('tft_set_number', '?')} | {minutes} min", font=_font(16), fill=GREY)

    stats = [
        ("PLAYER", account.riot_id, 40),
        ("LEVEL", str(me.get('level', 0)), 340),
        ("LAST ROUND", str(me.get('last_round', 0)), 460),
        ("DAMAGE", str(me.get('total_damage_to_players', 0)), 620),
        ("ELIMINATED", str(me.get('players_eliminated', 0)), 760),
    ]
    header_font, value_font = _font(14), _font(20)
    for header, value, x in stats:
        draw.text((x, 135), header, font=header_font, fill=GREY)
        draw.text((x, 165), value, font=value_font, fill=WHITE)
    return _to_png(canvas)


class PillowMatchRenderer:
    """在工作线程中绘制比赛结果图片，同时最多渲染 max_concurrent 张，超时抛出 TimeoutError。"""

    def __init__(self, max_concurrent: int = 2, timeout: float = 30.0):
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.timeout = timeout

    async def _render(self, func, account: TrackedAccount, match: dict) -> bytes:
        async with self._semaphore:
            data = await asyncio.wait_for(asyncio.to_thread(func, account, match), timeout=self.timeout)
        logger.debug("比赛结果图片已渲染", extra={'riot_id': account.riot_id, 'size': len(data)})
        return data

    async def render_summary(self, account: TrackedAccount, match: dict) -> bytes:
        return await self._render(draw_lol_summary, account, match)

    async def render_tft_summary(self, account: TrackedAccount, match: dict) -> bytes:
        return await self._render(draw_tft_summary, account, match)
