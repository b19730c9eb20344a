from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Response, UploadFile
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from .auth_routes import require_admin
from .db import get_session
from .events import log_event
from .models import CartItem, Product, ProductImage, User, WishlistItem

router = APIRouter()

MAX_IMAGE_BYTES = 5 * 1024 * 1024
GENDERS = ("men", "women", "unisex")
PRODUCT_STATUSES = ("Active", "Inactive")


def serialize_product(p: Product) -> Dict[str, Any]:
    return {
        "id": p.id,
        "name": p.name,
        "sku": p.sku,
        "short_description": p.short_description,
        "long_description": p.long_description,
        "price_cents": p.price_cents,
        "original_price_cents": p.original_price_cents,
        "stock": p.stock,
        "sizes": list(p.sizes or []),
        "status": p.status,
        "fabric": p.fabric,
        "images": list(p.images or []),
        "image": p.image,
        "category": p.category,
        "gender": p.gender,
        "featured": bool(p.featured),
        "new": bool(p.is_new),
        "in_stock": bool(p.in_stock) and (p.stock or 0) > 0,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


class ProductBody(BaseModel):
    name: str = Field(min_length=1)
    sku: str = Field(min_length=1)
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    price_cents: int = Field(ge=0)
    original_price_cents: Optional[int] = Field(default=None, ge=0)
    stock: int = Field(default=0, ge=0)
    sizes: List[str] = Field(min_length=1)
    status: str = "Active"
    fabric: Optional[str] = None
    images: List[str] = []
    image: Optional[str] = None
    category: str = Field(min_length=1)
    gender: str = "unisex"
    featured: bool = False
    new: bool = False
    in_stock: bool = True

    @field_validator("status")
    @classmethod
    def _status(cls, v: str) -> str:
        if v not in PRODUCT_STATUSES:
            raise ValueError("status must be Active or Inactive")
        return v

    @field_validator("gender")
    @classmethod
    def _gender(cls, v: str) -> str:
        v = (v or "unisex").strip().lower()
        if v not in GENDERS:
            raise ValueError("gender must be men, women or unisex")
        return v


class ProductUpdateBody(BaseModel):
    name: Optional[str] = None
    sku: Optional[str] = None
    short_description: Optional[str] = None
    long_description: Optional[str] = None
    price_cents: Optional[int] = Field(default=None, ge=0)
    original_price_cents: Optional[int] = Field(default=None, ge=0)
    stock: Optional[int] = Field(default=None, ge=0)
    sizes: Optional[List[str]] = Field(default=None, min_length=1)
    status: Optional[str] = None
    fabric: Optional[str] = None
    images: Optional[List[str]] = None
    image: Optional[str] = None
    category: Optional[str] = None
    gender: Optional[str] = None
    featured: Optional[bool] = None
    new: Optional[bool] = None
    in_stock: Optional[bool] = None

    @field_validator("status")
    @classmethod
    def _status(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in PRODUCT_STATUSES:
            raise ValueError("status must be Active or Inactive")
        return v

    @field_validator("gender")
    @classmethod
    def _gender(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v.strip().lower() not in GENDERS:
            raise ValueError("gender must be men, women or unisex")
        return v.strip().lower() if v is not None else v


def _apply_fields(product: Product, fields: Dict[str, Any]) -> None:
    for key, val in fields.items():
        if key == "new":
            product.is_new = val
        elif key == "sku":
            product.sku = val.strip()
        else:
            setattr(product, key, val)
    if not product.image and product.images:
        product.image = product.images[0]


async def get_product_or_404(db: AsyncSession, product_id: str) -> Product:
    product = await db.get(Product, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="product not found")
    return product


@router.get("/api/products")
async def list_products(
    category: Optional[str] = None,
    gender: Optional[str] = None,
    status: Optional[str] = None,
    featured: Optional[bool] = None,
    in_stock: Optional[bool] = None,
    new: Optional[bool] = None,
    search: Optional[str] = None,
    limit: int = Query(200, ge=1, le=1000),
    db: AsyncSession = Depends(get_session),
):
    stmt = select(Product)
    if category and category != "All":
        stmt = stmt.where(Product.category == category)
    if gender:
        stmt = stmt.where(Product.gender == gender.strip().lower())
    if status:
        stmt = stmt.where(Product.status == status)
    if featured is not None:
        stmt = stmt.where(Product.featured == featured)
    if new is not None:
        stmt = stmt.where(Product.is_new == new)
    if in_stock is not None:
        if in_stock:
            stmt = stmt.where(Product.in_stock == True, Product.stock > 0)
        else:
            stmt = stmt.where((Product.in_stock == False) | (Product.stock <= 0))
    if search:
        like = f"%{search.strip().lower()}%"
        stmt = stmt.where(func.lower(Product.name).like(like) | func.lower(Product.sku).like(like))
    stmt = stmt.order_by(Product.created_at.desc()).limit(limit)
    products = (await db.scalars(stmt)).all()
    return [serialize_product(p) for p in products]


@router.get("/api/products/{product_id}")
async def get_product(product_id: str, db: AsyncSession = Depends(get_session)):
    return serialize_product(await get_product_or_404(db, product_id))


@router.post("/api/products", status_code=201)
async def create_product(
    body: ProductBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    sku = body.sku.strip()
    if await db.scalar(select(Product.id).where(Product.sku == sku)):
        raise HTTPException(status_code=400, detail="product with this sku already exists")
    product = Product()
    _apply_fields(product, body.model_dump())
    db.add(product)
    await db.commit()
    await db.refresh(product)
    log_event("catalog", "product_created", product_id=product.id, sku=product.sku, actor=admin.id)
    return serialize_product(product)


@router.put("/api/products/{product_id}")
async def update_product(
    product_id: str,
    body: ProductUpdateBody,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    product = await get_product_or_404(db, product_id)
    fields = body.model_dump(exclude_unset=True)
    fields = {k: v for k, v in fields.items() if v is not None}
    if "sku" in fields:
        clash = await db.scalar(select(Product.id).where(Product.sku == fields["sku"].strip(), Product.id != product_id))
        if clash:
            raise HTTPException(status_code=400, detail="product with this sku already exists")
    _apply_fields(product, fields)
    await db.commit()
    await db.refresh(product)
    log_event("catalog", "product_updated", product_id=product.id, fields=sorted(fields), actor=admin.id)
    return serialize_product(product)


@router.delete("/api/products/{product_id}")
async def delete_product(
    product_id: str,
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    product = await get_product_or_404(db, product_id)
    await db.execute(delete(CartItem).where(CartItem.product_id == product_id))
    await db.execute(delete(WishlistItem).where(WishlistItem.product_id == product_id))
    await db.delete(product)
    await db.commit()
    log_event("catalog", "product_deleted", product_id=product_id, actor=admin.id)
    return {"ok": True}


@router.delete("/api/admin/products")
async def clear_products(
    db: AsyncSession = Depends(get_session),
    admin: User = Depends(require_admin),
):
    await db.execute(delete(CartItem))
    await db.execute(delete(WishlistItem))
    result = await db.execute(delete(Product))
    await db.commit()
    log_event("catalog", "catalog_cleared", deleted=result.rowcount, actor=admin.id)
    return {"ok": True, "deleted": result.rowcount}


# ---------- Product images ----------
@router.post("/api/images/upload", status_code=201)
async def upload_image(
    file: UploadFile = File(...),
    db: AsyncSession = Depends(get_session),
    _: User = Depends(require_admin),
):
    content_type = (file.content_type or "").lower()
    if not content_type.startswith("image/"):
        raise HTTPException(status_code=400, detail="only image uploads are accepted")
    data = await file.read()
    if not data:
        raise HTTPException(status_code=400, detail="empty file")
    if len(data) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="image too large")
    img = ProductImage(filename=file.filename, content_type=content_type, data=data)
    db.add(img)
    await db.commit()
    return {"ok": True, "id": img.id, "url": f"/api/images/{img.id}"}


@router.get("/api/images/{image_id}")
async def get_image(image_id: str, db: AsyncSession = Depends(get_session)):
    img = await db.get(ProductImage, image_id)
    if not img:
        raise HTTPException(status_code=404, detail="image not found")
    return Response(
        content=img.data,
        media_type=img.content_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )
