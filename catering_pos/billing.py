"""
Bill rendering: order snapshot -> fixed layout -> PNG raster / paginated PDF.

The layout step is pure and only reads values frozen on the order (item
names, prices, bundle contents), never the live catalog. Rasterization is
done with Pillow in two passes: one to measure the height, one to paint.
"""

import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime
from io import BytesIO
from typing import Optional

from PIL import Image, ImageDraw, ImageFont

from .errors import RenderError
from .pricing import compute_totals, format_discount, format_money, line_subtotal
from .settings import Settings

logger = logging.getLogger(__name__)

DEALS_CATEGORY = "Deals"

BILL_WIDTH = 800
MARGIN = 24
PADDING = 8
# (heading, share of table width)
COLUMNS = (("Sr#", 0.08), ("Item", 0.47), ("Price", 0.15), ("Qty", 0.10), ("Subtotal", 0.20))

BLACK = (0, 0, 0)
TEXT = (51, 51, 51)
MUTED = (102, 102, 102)
ACCENT = (0, 123, 255)
DANGER = (220, 53, 69)
HEADER_FILL = (245, 245, 245)
BOX_OUTLINE = (221, 221, 221)
STATUS_COLOURS = {"confirmed": (0, 128, 0), "cancelled": (255, 0, 0)}
PENDING_COLOUR = (255, 165, 0)

# A4 portrait
PAGE_RATIO = 297 / 210


@dataclass
class BillRow:
    serial: int
    name: str
    price: str
    quantity: str
    subtotal: str
    is_deal: bool = False
    includes: list[str] = field(default_factory=list)


@dataclass
class BillLayout:
    header: list[str]
    meta: list[tuple[str, str]]
    status: str
    customer: list[tuple[str, str]]
    rows: list[BillRow]
    totals: list[tuple[str, str]]
    footer: list[str]
    banner: Optional[str] = None


def format_date(value) -> str:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return value.strftime("%B %d, %Y, %I:%M %p")


class BillRenderer:
    def __init__(self, settings: Settings, width: int = BILL_WIDTH):
        self.business_name = settings.BUSINESS_NAME
        self.business_address = settings.BUSINESS_ADDRESS
        self.business_phone = settings.BUSINESS_PHONE
        self.business_email = settings.BUSINESS_EMAIL
        self.currency = settings.CURRENCY_SYMBOL
        self.width = width
        self._fonts: Optional[dict] = None

    def money(self, value: float) -> str:
        return format_money(value, self.currency)

    def layout(self, order: dict) -> BillLayout:
        try:
            return self._layout(order)
        except (KeyError, TypeError, ValueError) as e:
            raise RenderError(f"Order cannot be laid out as a bill: {e}") from e

    def _layout(self, order: dict) -> BillLayout:
        items = order["items"]
        if not items:
            raise ValueError("order has no items")
        customer = order["customer"]

        meta = [
            ("Order Number", str(order["orderNumber"])),
            ("Date", format_date(order["createdAt"])),
            ("Status", order["status"].upper()),
        ]
        if order.get("deliveryDate"):
            meta.append(("Delivery Date", format_date(order["deliveryDate"])))

        customer_lines = [
            ("Name", customer["name"]),
            ("WhatsApp", customer["whatsapp"]),
            ("Address", customer["address"]),
        ]
        if customer.get("notes"):
            customer_lines.append(("Customer Notes", customer["notes"]))
        if order.get("notes"):
            customer_lines.append(("Special Notes", order["notes"]))

        rows = []
        for index, item in enumerate(items, start=1):
            is_deal = item.get("category") == DEALS_CATEGORY
            rows.append(BillRow(
                serial=index,
                name=item["name"],
                price=self.money(item["price"]),
                quantity=str(item["quantity"]),
                subtotal=self.money(line_subtotal(item["price"], item["quantity"])),
                is_deal=is_deal,
                includes=list(item.get("includes") or []) if is_deal else [],
            ))

        discount = float(order.get("discount") or 0)
        discount_type = order.get("discountType", "amount")
        money = compute_totals(items, discount, discount_type)
        totals = [("Subtotal", self.money(money["totalAmount"]))]
        if discount > 0:
            label = f"Discount ({format_discount(discount, discount_type, self.currency)})"
            totals.append((label, f"-{self.money(money['discountAmount'])}"))
        totals.append(("Total Amount", self.money(money["finalAmount"])))

        return BillLayout(
            header=[
                self.business_name,
                f"Address: {self.business_address}",
                f"Phone: {self.business_phone} | Email: {self.business_email}",
            ],
            meta=meta,
            status=order["status"],
            customer=customer_lines,
            rows=rows,
            totals=totals,
            footer=["Thank you for your order!", "For any queries, please contact us at the above number."],
            banner="HIGH PRIORITY ORDER" if order.get("priority") == "high" else None,
        )

    # Rasterization

    def fonts(self) -> dict:
        if self._fonts is None:
            self._fonts = {
                "title": ImageFont.load_default(size=26),
                "heading": ImageFont.load_default(size=17),
                "body": ImageFont.load_default(size=15),
                "small": ImageFont.load_default(size=13),
                "total": ImageFont.load_default(size=19),
            }
        return self._fonts

    def render_image(self, order: dict) -> Image.Image:
        layout = self.layout(order)
        try:
            probe = ImageDraw.Draw(Image.new("RGB", (self.width, 1), "white"))
            height = self._paint(probe, layout)
            image = Image.new("RGB", (self.width, height), "white")
            self._paint(ImageDraw.Draw(image), layout)
        except Exception as e:
            logger.error("Error generating bill image for %s: %s", order.get("orderNumber"), e)
            raise RenderError(f"Failed to generate bill image: {e}") from e
        return image

    def render_png(self, order: dict) -> bytes:
        image = self.render_image(order)
        output = BytesIO()
        try:
            image.save(output, format="PNG", optimize=True)
        except (OSError, ValueError) as e:
            raise RenderError(f"Failed to encode bill image: {e}") from e
        data = output.getvalue()
        logger.info("Bill image generated for %s: %d bytes", order.get("orderNumber"), len(data))
        return data

    def render_pdf(self, order: dict) -> bytes:
        """Slice the raster into A4-proportioned pages and pack them as one PDF."""
        image = self.render_image(order)
        page_height = int(self.width * PAGE_RATIO)
        pages = []
        for top in range(0, image.height, page_height):
            page = Image.new("RGB", (self.width, page_height), "white")
            page.paste(image.crop((0, top, self.width, min(top + page_height, image.height))), (0, 0))
            pages.append(page)
        output = BytesIO()
        try:
            pages[0].save(output, format="PDF", save_all=True, append_images=pages[1:], resolution=96.0)
        except (OSError, ValueError) as e:
            raise RenderError(f"Failed to generate bill PDF: {e}") from e
        return output.getvalue()

    @staticmethod
    def to_data_url(png: bytes) -> str:
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")

    # Painting helpers; each returns the next free y coordinate

    def _line_height(self, draw: ImageDraw.ImageDraw, font) -> int:
        left, top, right, bottom = draw.textbbox((0, 0), "Ag", font=font)
        return bottom - top + 6

    def _wrap(self, draw: ImageDraw.ImageDraw, text: str, font, max_width: float) -> list[str]:
        lines: list[str] = []
        current = ""
        for word in str(text).split():
            candidate = f"{current} {word}" if current else word
            if current and draw.textlength(candidate, font=font) > max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current)
        return lines

    def _write(self, draw, x, y, text, font, max_width, fill=TEXT) -> int:
        step = self._line_height(draw, font)
        for line in self._wrap(draw, text, font, max_width):
            draw.text((x, y), line, font=font, fill=fill)
            y += step
        return y

    def _centered(self, draw, y, text, font, fill=TEXT) -> int:
        width = draw.textlength(text, font=font)
        draw.text(((self.width - width) / 2, y), text, font=font, fill=fill)
        return y + self._line_height(draw, font)

    def _paint(self, draw: ImageDraw.ImageDraw, layout: BillLayout) -> int:
        fonts = self.fonts()
        left, right = MARGIN, self.width - MARGIN
        inner_left, inner_right = left + PADDING * 2, right - PADDING * 2
        inner_width = inner_right - inner_left
        y = MARGIN + PADDING * 2

        for index, line in enumerate(layout.header):
            if index == 0:
                y = self._centered(draw, y, line, fonts["title"], fill=BLACK)
            else:
                y = self._centered(draw, y, line, fonts["small"], fill=MUTED)
        y += PADDING
        draw.line((inner_left, y, inner_right, y), fill=BLACK, width=2)
        y += PADDING * 2

        for label, value in layout.meta:
            fill = TEXT
            if label == "Status":
                fill = STATUS_COLOURS.get(layout.status, PENDING_COLOUR)
            y = self._write(draw, inner_left, y, f"{label}: {value}", fonts["body"], inner_width, fill=fill)
        y += PADDING

        box_top = y
        y += PADDING
        y = self._write(draw, inner_left + PADDING, y, "Customer Information", fonts["heading"], inner_width, fill=BLACK)
        for label, value in layout.customer:
            y = self._write(draw, inner_left + PADDING, y, f"{label}: {value}", fonts["body"], inner_width - PADDING * 2)
        y += PADDING
        draw.rectangle((inner_left, box_top, inner_right, y), outline=BOX_OUTLINE)
        y += PADDING * 2

        y = self._paint_table(draw, layout.rows, inner_left, inner_width, y)
        y += PADDING * 2

        draw.line((inner_left, y, inner_right, y), fill=BLACK, width=2)
        y += PADDING
        for index, (label, value) in enumerate(layout.totals):
            final = index == len(layout.totals) - 1
            font = fonts["total"] if final else fonts["body"]
            if final:
                draw.line((inner_left, y, inner_right, y), fill=BLACK)
                y += PADDING
            draw.text((inner_left, y), f"{label}:", font=font, fill=BLACK)
            draw.text((inner_right - draw.textlength(value, font=font), y), value, font=font, fill=BLACK)
            y += self._line_height(draw, font)
        y += PADDING * 2

        draw.line((inner_left, y, inner_right, y), fill=BOX_OUTLINE)
        y += PADDING
        y = self._centered(draw, y, layout.footer[0], fonts["heading"], fill=BLACK)
        for line in layout.footer[1:]:
            y = self._centered(draw, y, line, fonts["small"], fill=MUTED)
        if layout.banner:
            y += PADDING
            y = self._centered(draw, y, layout.banner, fonts["heading"], fill=DANGER)
        y += PADDING

        draw.rectangle((left, MARGIN, right, y), outline=BLACK, width=2)
        return y + MARGIN

    def _paint_table(self, draw, rows: list[BillRow], x: int, width: int, y: int) -> int:
        fonts = self.fonts()
        edges = [x]
        for _, share in COLUMNS:
            edges.append(edges[-1] + int(width * share))
        edges[-1] = x + width

        head_height = self._line_height(draw, fonts["body"]) + PADDING * 2
        draw.rectangle((edges[0], y, edges[-1], y + head_height), fill=HEADER_FILL, outline=BLACK)
        for (heading, _), cell_left in zip(COLUMNS, edges):
            draw.text((cell_left + PADDING, y + PADDING), heading, font=fonts["body"], fill=BLACK)
        for edge in edges[1:-1]:
            draw.line((edge, y, edge, y + head_height), fill=BLACK)
        y += head_height

        for row in rows:
            name_width = edges[2] - edges[1] - PADDING * 2
            cell_y = self._write(draw, edges[1] + PADDING, y + PADDING, row.name, fonts["body"], name_width, fill=BLACK)
            if row.is_deal:
                cell_y = self._write(draw, edges[1] + PADDING, cell_y, "Deal Package", fonts["small"], name_width, fill=MUTED)
                if row.includes:
                    cell_y = self._write(draw, edges[1] + PADDING, cell_y, "Deal Includes:", fonts["small"], name_width, fill=ACCENT)
                    for number, included in enumerate(row.includes, start=1):
                        cell_y = self._write(draw, edges[1] + PADDING * 2, cell_y, f"{number}. {included}", fonts["small"], name_width - PADDING, fill=MUTED)
            row_bottom = max(cell_y, y + head_height - PADDING) + PADDING

            cells = (str(row.serial), None, row.price, row.quantity, row.subtotal)
            for index, value in enumerate(cells):
                if value is not None:
                    draw.text((edges[index] + PADDING, y + PADDING), value, font=fonts["body"], fill=TEXT)
            draw.rectangle((edges[0], y, edges[-1], row_bottom), outline=BLACK)
            for edge in edges[1:-1]:
                draw.line((edge, y, edge, row_bottom), fill=BLACK)
            y = row_bottom
        return y
