import logging
import math
import re
from typing import Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from .auth import require
from .database import (
    create_document,
    delete_document,
    get_db,
    get_document,
    get_documents,
    update_document,
)
from .errors import NotFound, ValidationError
from .schemas import CategoryIn, Product, ProductUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/products", tags=["Products"])

PRODUCTS = "products"
CATEGORIES = "categories"

DEFAULT_CATEGORIES = ["Starters", "Main Course", "Deals", "Desserts", "Beverages"]

SEED_PRODUCTS: list[dict] = [
    {"name": "Chicken Biryani", "description": "Basmati rice layered with spiced chicken", "category": "Main Course", "price": 12.5},
    {"name": "Vegetable Samosa", "description": "Crisp pastry with spiced potato and peas", "category": "Starters", "price": 4.0, "isVegetarian": True},
    {"name": "Chicken Karahi", "description": "Wok cooked chicken in tomato and ginger", "category": "Main Course", "price": 14.0},
    {"name": "Gulab Jamun", "description": "Milk dumplings in rose syrup", "category": "Desserts", "price": 3.5, "isVegetarian": True},
    {"name": "Mango Lassi", "description": "Yoghurt and mango", "category": "Beverages", "price": 3.0, "isVegetarian": True},
    {
        "name": "Family Feast",
        "description": "Feeds four",
        "category": "Deals",
        "price": 45.0,
        "minPersons": 4,
        "items": ["Chicken Biryani", "Chicken Karahi", "4 Naan", "Raita", "Gulab Jamun"],
    },
]


async def seed_catalog(db: AsyncIOMotorDatabase) -> dict:
    """Insert default categories and a demo catalog, only into empty collections."""
    inserted = {"categories": 0, "products": 0}
    if await db[CATEGORIES].count_documents({}) == 0:
        for name in DEFAULT_CATEGORIES:
            await create_document(db, CATEGORIES, {"name": name, "isActive": True, "isDefault": True})
            inserted["categories"] += 1
    if await db[PRODUCTS].count_documents({}) == 0:
        for p in SEED_PRODUCTS:
            await create_document(db, PRODUCTS, Product(**p).to_document())
            inserted["products"] += 1
    return inserted


# Specific routes before the parameterized /{product_id} ones

@router.get("/categories", dependencies=[Depends(require("products:read"))])
async def list_categories(db: AsyncIOMotorDatabase = Depends(get_db)):
    return await get_documents(db, CATEGORIES, {"isActive": True}, limit=500, sort=[("name", 1)])


@router.post("/categories", status_code=201, dependencies=[Depends(require("products:write"))])
async def create_category(payload: CategoryIn, db: AsyncIOMotorDatabase = Depends(get_db)):
    name = payload.name.strip()
    if not name:
        raise ValidationError("Category name is required")
    existing = await db[CATEGORIES].find_one({"name": {"$regex": f"^{re.escape(name)}$", "$options": "i"}})
    if existing:
        raise ValidationError("Category already exists")
    category = await create_document(db, CATEGORIES, {"name": name, "isActive": True, "isDefault": False})
    logger.info("Category %s created", name)
    return {"message": "Category created successfully", "category": category}


@router.delete("/categories/{category_id}", dependencies=[Depends(require("products:write"))])
async def delete_category(category_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    category = await get_document(db, CATEGORIES, category_id)
    if category is None:
        raise NotFound("Category not found")
    if category.get("isDefault"):
        raise ValidationError("Cannot delete default category")
    in_use = await db[PRODUCTS].count_documents({"category": category["name"]})
    if in_use:
        raise ValidationError(f"Cannot delete category. {in_use} product(s) are using this category.")
    await delete_document(db, CATEGORIES, category_id)
    return {"message": "Category deleted successfully", "category": category}


@router.get("", dependencies=[Depends(require("products:read"))])
async def list_products(
    category: Optional[str] = Query(None),
    sub_category: Optional[str] = Query(None, alias="subCategory"),
    is_vegetarian: Optional[bool] = Query(None, alias="isVegetarian"),
    search: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    filter_dict: dict = {}
    if category:
        filter_dict["category"] = category
    if sub_category:
        filter_dict["subCategory"] = sub_category
    if is_vegetarian is not None:
        filter_dict["isVegetarian"] = is_vegetarian
    if search:
        pattern = re.escape(search)
        filter_dict["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
        ]

    products = await get_documents(
        db, PRODUCTS, filter_dict, limit=limit, skip=(page - 1) * limit, sort=[("category", 1), ("name", 1)],
    )
    total = await db[PRODUCTS].count_documents(filter_dict)
    return {
        "products": products,
        "pagination": {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit)},
    }


@router.get("/category/{category}", dependencies=[Depends(require("products:read"))])
async def products_by_category(category: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    return await get_documents(db, PRODUCTS, {"category": category}, limit=500, sort=[("name", 1)])


@router.post("", status_code=201, dependencies=[Depends(require("products:write"))])
async def create_product(product: Product, db: AsyncIOMotorDatabase = Depends(get_db)):
    saved = await create_document(db, PRODUCTS, product.to_document())
    logger.info("Product %s created", saved["name"])
    return {"message": "Product created successfully", "product": saved}


@router.get("/{product_id}", dependencies=[Depends(require("products:read"))])
async def get_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    product = await get_document(db, PRODUCTS, product_id)
    if product is None:
        raise NotFound("Product not found")
    return product


@router.put("/{product_id}", dependencies=[Depends(require("products:write"))])
async def update_product(product_id: str, payload: ProductUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    changes = payload.to_document(exclude_unset=True)
    if await get_document(db, PRODUCTS, product_id) is None:
        raise NotFound("Product not found")
    # Orders keep the price they were placed with; nothing to cascade here
    updated = await update_document(db, PRODUCTS, product_id, changes)
    if updated is None:
        raise NotFound("Product not found")
    return {"message": "Product updated successfully", "product": updated}


@router.delete("/{product_id}", dependencies=[Depends(require("products:write"))])
async def delete_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    product = await get_document(db, PRODUCTS, product_id)
    if product is None or not await delete_document(db, PRODUCTS, product_id):
        raise NotFound("Product not found")
    return {"message": "Product deleted successfully", "product": product}
