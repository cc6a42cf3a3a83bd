"""Registry of the indexers this job knows how to build.

Each indexer is an ``IndexerSpec`` value: a primary query, the side tables it
joins in memory and the rules that turn one primary row into one document.
"""

import re
from typing import Any, Dict, List, Mapping

from feindexer.assembler import Collapse, DerivedField, LookupField, RankField, ScalarField
from feindexer.lookup import LookupSpec
from feindexer.normalize import canonical_label, coerce_int, flag_bit, numeric_sort_key, smart_alpha_key
from feindexer.spec import ClosureStep, IndexerSpec

_WORD_SPLIT_RE = re.compile(r"\W+")

SEQUENCE_PROVIDERS = {"TrEMBL": "UniProt", "SWISS-PROT": "UniProt"}


def journal_suffixes(row: Mapping[str, Any], lookups) -> List[str]:
    """Every trailing word run of the journal name, so "Mol Cell Biol" also
    matches "Cell Biol" and "Biol"."""
    journal = row.get("journal")
    if not journal:
        return []
    words = [word for word in _WORD_SPLIT_RE.split(journal) if word]
    return [journal] + [" ".join(words[i:]) for i in range(1, len(words))]


def sequence_length(row: Mapping[str, Any], lookups) -> int:
    return coerce_int(row.get("length")) or 0


SEQUENCE = IndexerSpec(
    name="sequence",
    index="sequence",
    id_field="sequenceKey",
    id_column="sequence_key",
    bounds_sql="SELECT MIN(sequence_key) AS min_key, MAX(sequence_key) AS max_key FROM sequence",
    query=(
        "SELECT s.sequence_key, ssn.by_sequence_type, ssn.by_provider, s.length, s.provider "
        "FROM sequence s JOIN sequence_sequence_num ssn ON ssn.sequence_key = s.sequence_key "
        "WHERE s.sequence_key > %(start)s AND s.sequence_key <= %(stop)s "
        "ORDER BY s.sequence_key"
    ),
    chunk_size=100000,
    mapping="sequence.json",
    lookups=[
        LookupSpec(
            name="seq_references",
            sql="SELECT sequence_key, reference_key FROM reference_to_sequence "
            "WHERE sequence_key > %(start)s AND sequence_key <= %(stop)s",
            key_column="sequence_key",
            value_column="reference_key",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="seq_markers",
            sql="SELECT sequence_key, marker_key FROM marker_to_sequence "
            "WHERE sequence_key > %(start)s AND sequence_key <= %(stop)s",
            key_column="sequence_key",
            value_column="marker_key",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="seq_ids",
            sql="SELECT sequence_key, acc_id FROM sequence_id "
            "WHERE private != 1 AND sequence_key > %(start)s AND sequence_key <= %(stop)s",
            key_column="sequence_key",
            value_column="acc_id",
            distinct=True,
            intern=True,
            chunked=True,
        ),
    ],
    rules=[
        ScalarField("provider", transform=canonical_label(SEQUENCE_PROVIDERS)),
        ScalarField("by_sequence_type", "sequenceTypeSort"),
        ScalarField("by_provider", "providerSort"),
        DerivedField("length", sequence_length),
        LookupField("seq_references", "referenceKey", "sequence_key"),
        LookupField("seq_markers", "markerKey", "sequence_key"),
        LookupField("seq_ids", "sequenceId", "sequence_key"),
    ],
)

REFERENCE = IndexerSpec(
    name="reference",
    index="reference",
    id_field="referenceKey",
    id_column="reference_key",
    bounds_sql="SELECT MIN(reference_key) AS min_key, MAX(reference_key) AS max_key FROM reference",
    query=(
        "SELECT r.reference_key, r.year, r.jnum_id, r.pubmed_id, r.authors, r.title, r.journal, "
        "r.vol, r.issue, r.abstract, r.reference_type "
        "FROM reference r "
        "WHERE r.reference_key > %(start)s AND r.reference_key <= %(stop)s "
        "ORDER BY r.reference_key"
    ),
    chunk_size=50000,
    mapping="reference.json",
    lookups=[
        LookupSpec(
            name="ref_disease_markers",
            sql="SELECT mtr.reference_key, m.primary_id AS marker_id "
            "FROM hdp_marker_to_reference mtr JOIN marker m ON m.marker_key = mtr.marker_key",
            key_column="reference_key",
            value_column="marker_id",
            distinct=True,
        ),
        LookupSpec(
            name="ref_markers",
            sql="SELECT reference_key, marker_key FROM marker_to_reference "
            "WHERE reference_key > %(start)s AND reference_key <= %(stop)s",
            key_column="reference_key",
            value_column="marker_key",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="ref_alleles",
            sql="SELECT reference_key, allele_key FROM allele_to_reference "
            "WHERE reference_key > %(start)s AND reference_key <= %(stop)s",
            key_column="reference_key",
            value_column="allele_key",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="ref_authors",
            sql="SELECT reference_key, author, sequence_num, is_last FROM reference_individual_authors "
            "WHERE reference_key > %(start)s AND reference_key <= %(stop)s ORDER BY reference_key, sequence_num",
            key_column="reference_key",
            value_factory=lambda row: {"author": row.get("author"), "is_last": row.get("is_last")},
            chunked=True,
        ),
        LookupSpec(
            name="ref_ids",
            sql="SELECT reference_key, acc_id FROM reference_id "
            "WHERE reference_key > %(start)s AND reference_key <= %(stop)s",
            key_column="reference_key",
            value_column="acc_id",
            distinct=True,
            chunked=True,
        ),
    ],
    rules=[
        ScalarField("year", transform=coerce_int),
        ScalarField("jnum_id", "jnumId", required=True),
        ScalarField("jnum_id", "jnumSort", transform=numeric_sort_key("J:")),
        ScalarField("pubmed_id", "pubmedId"),
        ScalarField("authors"),
        ScalarField("title"),
        ScalarField("journal"),
        ScalarField("vol"),
        ScalarField("issue"),
        ScalarField("abstract"),
        ScalarField("reference_type", "referenceType"),
        LookupField("ref_markers", "markerKey", "reference_key"),
        LookupField("ref_markers", "markerCount", "reference_key", collapse=Collapse.COUNT),
        LookupField("ref_alleles", "alleleKey", "reference_key"),
        LookupField("ref_alleles", "alleleCount", "reference_key", collapse=Collapse.COUNT),
        LookupField("ref_disease_markers", "diseaseRelevantMarkerId", "reference_key"),
        LookupField("ref_ids", "referenceId", "reference_key"),
        LookupField("ref_authors", "author", "reference_key", distinct=True, project=lambda value: value["author"]),
        LookupField(
            "ref_authors",
            "firstAuthor",
            "reference_key",
            collapse=Collapse.FIRST,
            project=lambda value: value["author"],
        ),
        LookupField(
            "ref_authors",
            "lastAuthor",
            "reference_key",
            collapse=Collapse.LAST,
            project=lambda value: value["author"] if value["is_last"] else None,
        ),
    ],
)

MARKER = IndexerSpec(
    name="marker",
    index="marker",
    id_field="markerKey",
    id_column="marker_key",
    bounds_sql="SELECT MIN(marker_key) AS min_key, MAX(marker_key) AS max_key FROM marker",
    query=(
        "SELECT m.marker_key, m.primary_id AS marker_id, m.symbol, m.name, m.marker_type, "
        "m.marker_subtype, m.status, m.organism "
        "FROM marker m "
        "WHERE m.organism = 'mouse' AND m.marker_key > %(start)s AND m.marker_key <= %(stop)s "
        "ORDER BY m.marker_key"
    ),
    chunk_size=25000,
    mapping="marker.json",
    lookups=[
        LookupSpec(
            name="marker_symbol_order",
            sql="SELECT DISTINCT marker_key, symbol FROM marker WHERE organism = 'mouse'",
            key_column="marker_key",
            value_column="symbol",
            ordering=True,
            order_key=smart_alpha_key,
        ),
        LookupSpec(
            name="marker_ids",
            sql="SELECT DISTINCT marker_key, acc_id FROM marker_id "
            "WHERE private = 0 AND marker_key > %(start)s AND marker_key <= %(stop)s",
            key_column="marker_key",
            value_column="acc_id",
            distinct=True,
            intern=True,
            chunked=True,
        ),
        LookupSpec(
            name="marker_references",
            sql="SELECT DISTINCT marker_key, reference_key FROM marker_to_reference "
            "WHERE marker_key > %(start)s AND marker_key <= %(stop)s",
            key_column="marker_key",
            value_column="reference_key",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="marker_terms",
            sql="SELECT DISTINCT m.marker_key, a.term_id FROM marker_to_annotation m "
            "JOIN annotation a ON a.annotation_key = m.annotation_key "
            "WHERE m.marker_key > %(start)s AND m.marker_key <= %(stop)s",
            key_column="marker_key",
            value_column="term_id",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="marker_locations",
            sql="SELECT marker_key, chromosome, start_coordinate, end_coordinate, strand FROM marker_location "
            "WHERE marker_key > %(start)s AND marker_key <= %(stop)s ORDER BY marker_key, sequence_num",
            key_column="marker_key",
            value_factory=lambda row: {
                "chromosome": row.get("chromosome"),
                "start": coerce_int(row.get("start_coordinate")),
                "end": coerce_int(row.get("end_coordinate")),
                "strand": row.get("strand"),
            },
            chunked=True,
        ),
        LookupSpec(
            name="marker_nomen",
            sql="SELECT marker_key, nomen, term_type FROM marker_searchable_nomenclature "
            "WHERE marker_key > %(start)s AND marker_key <= %(stop)s",
            key_column="marker_key",
            value_column="nomen",
            distinct=True,
            chunked=True,
        ),
    ],
    rules=[
        ScalarField("marker_id", "markerId", required=True),
        ScalarField("symbol", required=True),
        ScalarField("name"),
        ScalarField("marker_type", "markerType"),
        ScalarField("marker_subtype", "markerSubtype"),
        ScalarField("status"),
        ScalarField("organism"),
        RankField("marker_symbol_order", "bySymbol", "symbol"),
        LookupField("marker_ids", "accId", "marker_key"),
        LookupField("marker_references", "referenceKey", "marker_key"),
        LookupField("marker_terms", "termId", "marker_key"),
        LookupField("marker_nomen", "nomen", "marker_key"),
        LookupField(
            "marker_locations",
            "chromosome",
            "marker_key",
            collapse=Collapse.FIRST,
            project=lambda value: value["chromosome"],
        ),
        LookupField(
            "marker_locations",
            "startCoordinate",
            "marker_key",
            collapse=Collapse.FIRST,
            project=lambda value: value["start"],
        ),
        LookupField(
            "marker_locations",
            "endCoordinate",
            "marker_key",
            collapse=Collapse.FIRST,
            project=lambda value: value["end"],
        ),
        LookupField(
            "marker_locations",
            "strand",
            "marker_key",
            collapse=Collapse.FIRST,
            project=lambda value: value["strand"],
        ),
    ],
)

CRE_ALLELE_SYSTEM = IndexerSpec(
    name="creAlleleSystem",
    index="creAlleleSystem",
    id_field="alleleSystemKey",
    id_column="allele_system_key",
    stream=True,
    query="SELECT DISTINCT allele_system_key, allele_id, system_key, has_image FROM recombinase_allele_system",
    mapping="creAlleleSystem.json",
    rules=[
        ScalarField("allele_id", "alleleId", required=True),
        ScalarField("system_key", "systemKey"),
        DerivedField("hasImage", lambda row, lookups: flag_bit(row.get("has_image"))),
    ],
)

VOCAB_TERM_AC = IndexerSpec(
    name="vocabTermAC",
    index="vocabTermAC",
    id_field="termKey",
    id_column="term_key",
    bounds_sql="SELECT MIN(term_key) AS min_key, MAX(term_key) AS max_key FROM term",
    query=(
        "SELECT t.term_key, t.term, t.vocab_name, t.display_vocab_name, t.primary_id, "
        "tc.marker_count, tc.gxdlit_marker_count, tc.expression_marker_count "
        "FROM term t JOIN term_counts tc ON tc.term_key = t.term_key "
        "WHERE t.is_obsolete = 0 "
        "AND t.vocab_name IN ('GO', 'Mammalian Phenotype', 'OMIM', 'Human Phenotype Ontology') "
        "AND t.term_key > %(start)s AND t.term_key <= %(stop)s "
        "ORDER BY t.term_key"
    ),
    chunk_size=50000,
    mapping="vocabTermAC.json",
    prepare=[
        ClosureStep(
            table="fe_term_closure",
            edge_sql="SELECT child_term_key AS child_key, parent_term_key AS parent_key FROM term_child",
        ),
    ],
    lookups=[
        LookupSpec(
            name="term_ids",
            sql="SELECT term_key, primary_id FROM term WHERE is_obsolete = 0",
            key_column="term_key",
            value_column="primary_id",
            intern=True,
        ),
        LookupSpec(
            name="term_order",
            sql="SELECT term_key, term FROM term WHERE is_obsolete = 0",
            key_column="term_key",
            value_column="term",
            ordering=True,
            order_key=smart_alpha_key,
        ),
        LookupSpec(
            name="term_synonyms",
            sql="SELECT term_key, synonym FROM term_synonym "
            "WHERE synonym_type != 'disease cluster' AND term_key > %(start)s AND term_key <= %(stop)s",
            key_column="term_key",
            value_column="synonym",
            distinct=True,
            chunked=True,
        ),
        LookupSpec(
            name="term_ancestor_ids",
            sql="SELECT descendant_key, ancestor_key FROM fe_term_closure "
            "WHERE descendant_key > %(start)s AND descendant_key <= %(stop)s",
            key_column="descendant_key",
            value_column="ancestor_key",
            distinct=True,
            chunked=True,
            expand_with="term_ids",
        ),
    ],
    rules=[
        ScalarField("primary_id", "termId", required=True),
        ScalarField("term", required=True),
        ScalarField("vocab_name", "rootVocab"),
        ScalarField("display_vocab_name", "vocab"),
        ScalarField("marker_count", "markerCount", default=0, transform=coerce_int),
        ScalarField("gxdlit_marker_count", "gxdLitMarkerCount", default=0, transform=coerce_int),
        ScalarField("expression_marker_count", "expressionMarkerCount", default=0, transform=coerce_int),
        RankField("term_order", "termSort", "term"),
        LookupField("term_synonyms", "synonym", "term_key"),
        LookupField("term_ancestor_ids", "ancestorId", "term_key"),
    ],
)

JOURNALS_AC = IndexerSpec(
    name="journalsAC",
    index="journalsAC",
    id_field="journal",
    stream=True,
    query="SELECT DISTINCT journal FROM reference WHERE journal IS NOT NULL",
    mapping="journalsAC.json",
    optimize=False,
    rules=[
        ScalarField("journal", "journalSort"),
        DerivedField("journalWord", journal_suffixes, multi=True),
    ],
)

INDEXERS: Dict[str, IndexerSpec] = {
    spec.name: spec
    for spec in (
        SEQUENCE,
        REFERENCE,
        MARKER,
        CRE_ALLELE_SYSTEM,
        VOCAB_TERM_AC,
        JOURNALS_AC,
    )
}
