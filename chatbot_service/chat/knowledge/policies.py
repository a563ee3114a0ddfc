from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class KnowledgeSeed:
    seed_key: str
    category: str
    title: str
    content: str
    tags: list[str] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


KNOWLEDGE_BASE: list[KnowledgeSeed] = [
    # ── Build guides ─────────────────────────────────────────────────────────
    KnowledgeSeed(
        seed_key="kb_001",
        category="build_guide",
        title="Gaming PC budget split",
        content=(
            "For a gaming build spend roughly 35-40% of the budget on the GPU, "
            "20% on the CPU, 10% each on mainboard and RAM, and keep 8-10% for a "
            "quality PSU. With 20 triệu VND a mid-range GPU paired with a 6-core CPU "
            "and 16GB dual-channel RAM is the usual sweet spot for 1080p/1440p gaming."
        ),
        tags=["gaming", "budget", "gpu", "cpu"],
        keywords=["build", "gaming", "chơi game", "triệu", "cấu hình", "ngân sách"],
    ),
    KnowledgeSeed(
        seed_key="kb_002",
        category="build_guide",
        title="Office and study PC",
        content=(
            "Office builds rarely need a discrete GPU: a CPU with integrated graphics, "
            "16GB RAM and a 500GB NVMe SSD handle Word, Excel and browsing comfortably. "
            "Prioritise the SSD over a faster CPU for snappy day-to-day use."
        ),
        tags=["office", "budget", "ssd"],
        keywords=["office", "văn phòng", "làm việc", "word", "excel", "học tập"],
    ),
    KnowledgeSeed(
        seed_key="kb_003",
        category="build_guide",
        title="Workstation for design and rendering",
        content=(
            "Design, video editing and 3D rendering scale with CPU cores and memory. "
            "Aim for 32GB RAM or more, a GPU with at least 12GB VRAM for GPU renderers, "
            "and separate SSDs for the OS and the active project cache."
        ),
        tags=["design", "rendering", "ram", "cpu"],
        keywords=["design", "thiết kế", "render", "3d", "video editing", "photoshop"],
    ),
    KnowledgeSeed(
        seed_key="kb_004",
        category="build_guide",
        title="Assembly order checklist",
        content=(
            "Install the CPU, cooler and RAM on the mainboard outside the case, test "
            "boot on the box, then mount the board, PSU, storage and finally the GPU. "
            "Route the 24-pin and CPU 8-pin cables before the GPU blocks access."
        ),
        tags=["assembly", "lắp ráp"],
        keywords=["lắp ráp", "assembly", "build", "mainboard", "case"],
    ),
    # ── Compatibility ────────────────────────────────────────────────────────
    KnowledgeSeed(
        seed_key="kb_010",
        category="compatibility",
        title="CPU socket and chipset matching",
        content=(
            "The CPU socket must match the mainboard: Intel 12th-14th gen use LGA1700, "
            "AMD Ryzen 7000 uses AM5 with DDR5 only, Ryzen 5000 uses AM4 with DDR4. "
            "Older boards may need a BIOS update before accepting newer CPUs."
        ),
        tags=["cpu", "mainboard", "socket"],
        keywords=["socket", "chipset", "intel", "amd", "tương thích", "mainboard"],
    ),
    KnowledgeSeed(
        seed_key="kb_011",
        category="compatibility",
        title="PSU wattage sizing",
        content=(
            "Add CPU and GPU board power, then add 30-40% headroom. A mid-range gaming "
            "build is comfortable on a 650W 80+ Bronze unit; high-end GPUs need 850W "
            "or more and the correct 12VHPWR or PCIe 8-pin connectors."
        ),
        tags=["psu", "gpu", "power"],
        keywords=["psu", "power supply", "nguồn", "watt", "công suất"],
    ),
    # ── Products ─────────────────────────────────────────────────────────────
    KnowledgeSeed(
        seed_key="kb_020",
        category="product",
        title="Choosing a graphics card",
        content=(
            "Compare GPUs by performance per price at your target resolution, VRAM "
            "capacity (8GB minimum for 1080p, 12GB+ for 1440p) and power draw. "
            "NVIDIA cards lead in ray tracing and CUDA workloads; AMD cards usually "
            "offer more VRAM at the same price."
        ),
        tags=["gpu", "nvidia", "amd"],
        keywords=["gpu", "vga", "card đồ họa", "so sánh", "giá", "price", "compare"],
    ),
    KnowledgeSeed(
        seed_key="kb_021",
        category="product",
        title="RAM specs explained",
        content=(
            "Capacity matters first, then dual-channel configuration, then speed. "
            "DDR4-3200 CL16 and DDR5-6000 CL30 are the value targets. Buy matched "
            "kits rather than mixing single sticks from different batches."
        ),
        tags=["ram", "memory"],
        keywords=["ram", "memory", "bộ nhớ", "thông số", "specs", "ddr4", "ddr5"],
    ),
    # ── Troubleshooting ──────────────────────────────────────────────────────
    KnowledgeSeed(
        seed_key="kb_030",
        category="troubleshooting",
        title="PC does not power on",
        content=(
            "If the máy không lên nguồn: check the wall socket and the PSU rear switch, "
            "reseat the 24-pin and CPU 8-pin connectors, verify the front-panel power "
            "switch header, and try booting with one RAM stick. A PSU paperclip test "
            "tells a dead PSU apart from a board fault."
        ),
        tags=["power", "psu", "boot"],
        keywords=["không lên nguồn", "nguồn", "lỗi", "power", "không hoạt động", "sửa"],
    ),
    KnowledgeSeed(
        seed_key="kb_031",
        category="troubleshooting",
        title="No display after boot",
        content=(
            "Fans spin but no image: connect the monitor to the GPU rather than the "
            "mainboard, reseat the GPU and RAM, clear CMOS, and read the debug LEDs. "
            "New CPUs on older boards often need a BIOS update."
        ),
        tags=["display", "gpu", "bios"],
        keywords=["màn hình", "display", "lỗi", "error", "không hiển thị", "bios"],
    ),
    KnowledgeSeed(
        seed_key="kb_032",
        category="troubleshooting",
        title="Overheating and throttling",
        content=(
            "High temperatures under load usually mean poor airflow or dried thermal "
            "paste. Check fan curves, clean dust filters, repaste the CPU cooler and "
            "make sure intake and exhaust fans are not fighting each other."
        ),
        tags=["cooler", "temperature"],
        keywords=["nóng", "tản nhiệt", "cooler", "fan", "overheat", "vấn đề"],
    ),
    # ── General ──────────────────────────────────────────────────────────────
    KnowledgeSeed(
        seed_key="kb_040",
        category="general",
        title="Warranty and returns",
        content=(
            "Components carry the manufacturer warranty, typically 36 months for CPUs, "
            "GPUs and mainboards. Keep the invoice and original box; returns within "
            "7 days are accepted for unopened items."
        ),
        tags=["warranty", "policy"],
        keywords=["bảo hành", "warranty", "đổi trả", "return"],
    ),
]
